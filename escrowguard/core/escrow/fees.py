"""Dispute-handling fees: assessment, collection and dunning.

Fees never gate the state machine. A charge that cannot be collected is
recorded as ``failed`` with a ``next_attempt_at`` and picked up again by the
dunning task.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import utcnow
from escrowguard.common.enums import FeeChargeStatus, FeeReason, Party
from escrowguard.common.exceptions import BadRequestError, NotFoundError, PaymentError
from escrowguard.common.logging import get_logger
from escrowguard.common.money import to_money
from escrowguard.config import settings
from escrowguard.db.models.dispute import DisputeCase
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.user import User
from escrowguard.integrations.stripe_client import PaymentProcessor

logger = get_logger("escrow.fees")


def fee_amount(reason: FeeReason) -> Decimal:
    if reason == FeeReason.ESCALATION:
        return to_money(settings.DISPUTE_ESCALATION_FEE)
    return to_money(settings.DISPUTE_OPEN_FEE)


def next_retry_at(attempts: int, now: datetime) -> datetime | None:
    delays = settings.FEE_RETRY_DELAY_HOURS
    if attempts > len(delays):
        return None
    return now + timedelta(hours=delays[attempts - 1])


class FeeAssessor:
    def __init__(self, processor: PaymentProcessor | None = None) -> None:
        if processor is None:
            from escrowguard.integrations.stripe_client import StripeClient

            processor = StripeClient()
        self.processor = processor

    async def assess(
        self, db: AsyncSession, dispute: DisputeCase, party: Party, reason: FeeReason
    ) -> DisputeFeeCharge:
        """Create the fee obligation for ``party``. At most one per (dispute, reason)."""
        result = await db.execute(
            select(DisputeFeeCharge).where(
                DisputeFeeCharge.dispute_id == dispute.id,
                DisputeFeeCharge.reason == reason.value,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("Fee %s already assessed for dispute %s", reason.value, dispute.id)
            return existing

        charge = DisputeFeeCharge(
            dispute_id=dispute.id,
            user_id=dispute.user_for(party),
            party=party.value,
            reason=reason.value,
            amount=fee_amount(reason),
            currency=settings.DISPUTE_FEE_CURRENCY,
            status=FeeChargeStatus.PENDING.value,
        )
        db.add(charge)
        await db.flush()
        logger.info(
            "Assessed %s fee of %s %s to %s for dispute %s",
            reason.value,
            charge.amount,
            charge.currency,
            party.value,
            dispute.id,
        )
        return charge

    async def get(self, db: AsyncSession, charge_id: uuid.UUID) -> DisputeFeeCharge:
        charge = await db.get(DisputeFeeCharge, charge_id)
        if not charge:
            raise NotFoundError("Fee charge", str(charge_id))
        return charge

    async def collect(
        self, db: AsyncSession, charge_id: uuid.UUID, now: datetime | None = None
    ) -> DisputeFeeCharge:
        """Attempt the off-session charge. Failures are recorded, never raised."""
        now = now or utcnow()
        charge = await self.get(db, charge_id)
        if charge.status not in (FeeChargeStatus.PENDING.value, FeeChargeStatus.FAILED.value):
            return charge
        if charge.status == FeeChargeStatus.PENDING.value and charge.stripe_payment_intent_id:
            # Already submitted; waiting for the processor callback
            return charge

        user = await db.get(User, charge.user_id)
        charge.attempts += 1
        charge.last_attempt_at = now

        try:
            intent = await self.processor.charge_saved_method(
                user.stripe_customer_id if user else None,
                user.default_payment_method_id if user else None,
                to_money(charge.amount),
                charge.currency,
                idempotency_key=f"dispute-fee:{charge.id}:{charge.attempts}",
                metadata={
                    "type": "dispute_fee",
                    "fee_charge_id": str(charge.id),
                    "dispute_id": str(charge.dispute_id),
                    "reason": charge.reason,
                },
            )
        except PaymentError as e:
            charge.status = FeeChargeStatus.FAILED.value
            charge.last_error = e.detail
            charge.next_attempt_at = next_retry_at(charge.attempts, now)
            logger.error(
                "Fee charge %s failed (attempt %d): %s", charge.id, charge.attempts, e.detail
            )
            await db.flush()
            return charge

        charge.stripe_payment_intent_id = intent.get("id")
        charge.last_error = None
        charge.next_attempt_at = None
        if intent.get("status") == "succeeded":
            charge.status = FeeChargeStatus.CHARGED.value
            logger.info("Fee charge %s collected (%s %s)", charge.id, charge.amount, charge.currency)
        else:
            charge.status = FeeChargeStatus.PENDING.value
            logger.info("Fee charge %s submitted, awaiting confirmation (%s)", charge.id, intent.get("status"))
        await db.flush()
        return charge

    async def due_for_retry(self, db: AsyncSession, now: datetime | None = None) -> list[DisputeFeeCharge]:
        now = now or utcnow()
        result = await db.execute(
            select(DisputeFeeCharge).where(
                DisputeFeeCharge.status == FeeChargeStatus.FAILED.value,
                DisputeFeeCharge.next_attempt_at.is_not(None),
                DisputeFeeCharge.next_attempt_at <= now,
                DisputeFeeCharge.is_deleted.is_(False),
            )
        )
        return list(result.scalars().all())

    async def waive(self, db: AsyncSession, charge_id: uuid.UUID, note: str) -> DisputeFeeCharge:
        charge = await self.get(db, charge_id)
        if charge.status == FeeChargeStatus.CHARGED.value:
            raise BadRequestError("A collected fee cannot be waived")
        charge.status = FeeChargeStatus.WAIVED.value
        charge.next_attempt_at = None
        charge.last_error = note
        await db.flush()
        logger.info("Fee charge %s waived: %s", charge.id, note)
        return charge

    async def apply_processor_event(self, db: AsyncSession, event: dict[str, Any]) -> DisputeFeeCharge | None:
        """Confirm a fee charge from a ``payment_intent.*`` webhook event."""
        event_type = event.get("type", "")
        intent = (event.get("data") or {}).get("object") or {}
        charge_id = (intent.get("metadata") or {}).get("fee_charge_id")
        if not charge_id:
            return None

        try:
            charge = await self.get(db, uuid.UUID(charge_id))
        except (ValueError, NotFoundError):
            logger.warning("Webhook references unknown fee charge %s", charge_id)
            return None

        if charge.status in (FeeChargeStatus.CHARGED.value, FeeChargeStatus.WAIVED.value):
            return charge

        if event_type == "payment_intent.succeeded":
            charge.status = FeeChargeStatus.CHARGED.value
            charge.stripe_payment_intent_id = intent.get("id") or charge.stripe_payment_intent_id
            charge.next_attempt_at = None
            logger.info("Fee charge %s confirmed by processor", charge.id)
        elif event_type == "payment_intent.payment_failed":
            now = utcnow()
            error = (intent.get("last_payment_error") or {}).get("message", "payment failed")
            charge.status = FeeChargeStatus.FAILED.value
            charge.last_error = error
            charge.next_attempt_at = next_retry_at(max(charge.attempts, 1), now)
            logger.error("Fee charge %s failed per processor: %s", charge.id, error)
        else:
            return charge

        await db.flush()
        return charge

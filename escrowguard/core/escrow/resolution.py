"""Applies final dispute outcomes to the escrow ledger.

The settlement intent is written inside the caller's transaction. Moving
money happens afterwards in ``execute_settlement``, keyed by the intent's
idempotency key so retries are safe, and the escrow is only booked as
released or refunded once that succeeds.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import utcnow
from escrowguard.common.enums import (
    DecisionStatus,
    EscrowStatus,
    FeeReason,
    Party,
    ResolutionSource,
    SettlementKind,
    SettlementStatus,
)
from escrowguard.common.exceptions import NotFoundError, PaymentError
from escrowguard.common.logging import get_logger
from escrowguard.common.money import to_money
from escrowguard.config import settings
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.core.escrow.ledger import EscrowLedger
from escrowguard.db.models.dispute import BindingDecision, DisputeCase
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.settlement import SettlementIntent
from escrowguard.db.models.user import User
from escrowguard.integrations.stripe_client import PaymentProcessor

logger = get_logger("escrow.resolution")


class ResolutionExecutor:
    def __init__(
        self,
        processor: PaymentProcessor | None = None,
        ledger: EscrowLedger | None = None,
        fees: FeeAssessor | None = None,
    ) -> None:
        if processor is None:
            from escrowguard.integrations.stripe_client import StripeClient

            processor = StripeClient()
        self.processor = processor
        self.ledger = ledger or EscrowLedger(processor)
        self.fees = fees or FeeAssessor(processor)

    async def apply_split(
        self,
        db: AsyncSession,
        dispute: DisputeCase,
        customer_amount: Decimal,
        vendor_amount: Decimal,
        source: ResolutionSource,
        summary: str,
    ) -> SettlementIntent:
        """Record the agreed split and queue the fund movement.

        The escrow stays ``disputed`` until ``execute_settlement`` has moved
        the money; only then is the split booked on the ledger.
        """
        customer_amount = to_money(customer_amount)
        vendor_amount = to_money(vendor_amount)

        escrow = await self.ledger.get(db, dispute.escrow_id)
        self.ledger.split_target(escrow, customer_amount, vendor_amount)

        dispute.customer_amount = customer_amount
        dispute.vendor_amount = vendor_amount
        dispute.resolution_source = source.value
        dispute.outcome_summary = summary

        intent = SettlementIntent(
            dispute_id=dispute.id,
            escrow_id=escrow.id,
            kind=SettlementKind.SPLIT.value,
            customer_amount=customer_amount,
            vendor_amount=vendor_amount,
            idempotency_key=f"settlement:{dispute.id}",
            status=SettlementStatus.PENDING.value,
        )
        db.add(intent)
        await db.flush()
        logger.info(
            "Dispute %s resolved by %s: customer %s / vendor %s (intent %s)",
            dispute.id,
            source.value,
            customer_amount,
            vendor_amount,
            intent.id,
        )
        return intent

    async def apply_external(
        self, db: AsyncSession, dispute: DisputeCase, escalating_party: Party, summary: str
    ) -> DisputeFeeCharge:
        """Hand the case off-platform. Funds stay disputed; the escalation fee is assessed."""
        escrow = await self.ledger.get(db, dispute.escrow_id)
        if escrow.status != EscrowStatus.DISPUTED.value:
            raise ValueError(f"Escrow {escrow.id} is not under dispute (status '{escrow.status}')")

        dispute.resolution_source = ResolutionSource.ESCALATION.value
        dispute.outcome_summary = summary

        result = await db.execute(
            select(BindingDecision).where(BindingDecision.dispute_id == dispute.id)
        )
        decision = result.scalar_one_or_none()
        if decision:
            decision.status = DecisionStatus.OVERRIDDEN_EXTERNAL.value

        charge = await self.fees.assess(db, dispute, escalating_party, FeeReason.ESCALATION)
        logger.info(
            "Dispute %s escalated externally by %s; escrow %s stays disputed",
            dispute.id,
            escalating_party.value,
            escrow.id,
        )
        return charge

    async def get_intent(self, db: AsyncSession, intent_id: uuid.UUID) -> SettlementIntent:
        intent = await db.get(SettlementIntent, intent_id)
        if not intent:
            raise NotFoundError("Settlement intent", str(intent_id))
        return intent

    async def execute_settlement(
        self, db: AsyncSession, intent_id: uuid.UUID, now: datetime | None = None
    ) -> SettlementIntent:
        """Run the processor transfer/refund for an intent, then book it on the ledger.

        A ``PaymentError`` is recorded on the intent and left for the retry
        sweep; it is not raised so the attempt counter survives the commit.
        """
        now = now or utcnow()
        intent = await self.get_intent(db, intent_id)
        if intent.status != SettlementStatus.PENDING.value:
            return intent

        escrow = await self.ledger.get(db, intent.escrow_id)
        dispute = await db.get(DisputeCase, intent.dispute_id)
        vendor = await db.get(User, escrow.vendor_id)

        intent.attempts += 1
        try:
            result = await self.processor.release_funds(
                escrow.stripe_payment_intent_id,
                to_money(intent.customer_amount),
                to_money(intent.vendor_amount),
                escrow.currency,
                vendor.stripe_account_id if vendor else None,
                idempotency_key=intent.idempotency_key,
            )
        except PaymentError as e:
            intent.last_error = e.detail
            logger.error(
                "Settlement %s for dispute %s failed (attempt %d): %s",
                intent.id,
                intent.dispute_id,
                intent.attempts,
                e.detail,
            )
            if intent.attempts >= settings.SETTLEMENT_MAX_ATTEMPTS:
                intent.status = SettlementStatus.FAILED.value
                if dispute:
                    dispute.needs_operator = True
                    dispute.operator_note = (
                        f"Settlement failed after {intent.attempts} attempts: {e.detail}"
                    )
                logger.error("Settlement %s gave up; dispute %s flagged for an operator", intent.id, intent.dispute_id)
            await db.flush()
            return intent

        self.ledger.apply_dispute_split(escrow, intent.customer_amount, intent.vendor_amount)
        intent.status = SettlementStatus.COMPLETED.value
        intent.refund_reference = result.get("refund_id")
        intent.transfer_reference = result.get("transfer_id")
        intent.last_error = None
        intent.completed_at = now
        if dispute:
            dispute.settled_at = now

        decision_result = await db.execute(
            select(BindingDecision).where(BindingDecision.dispute_id == intent.dispute_id)
        )
        decision = decision_result.scalar_one_or_none()
        if decision and dispute and dispute.resolution_source == ResolutionSource.BINDING_DECISION.value:
            decision.status = DecisionStatus.EXECUTED.value

        await db.flush()
        logger.info(
            "Settlement %s completed for dispute %s (refund=%s transfer=%s)",
            intent.id,
            intent.dispute_id,
            intent.refund_reference,
            intent.transfer_reference,
        )
        return intent

    async def pending_settlements(
        self, db: AsyncSession, grace_minutes: int = 0, now: datetime | None = None
    ) -> list[SettlementIntent]:
        """Pending intents older than ``grace_minutes``, leaving fresh ones to their own task."""
        cutoff = (now or utcnow()) - timedelta(minutes=grace_minutes)
        result = await db.execute(
            select(SettlementIntent)
            .where(
                SettlementIntent.status == SettlementStatus.PENDING.value,
                SettlementIntent.created_at <= cutoff,
                SettlementIntent.is_deleted.is_(False),
            )
            .order_by(SettlementIntent.created_at)
        )
        return list(result.scalars().all())

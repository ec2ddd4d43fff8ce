"""Custody state of the funds held against a booking."""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.enums import EscrowStatus
from escrowguard.common.exceptions import BadRequestError, ConflictError, NotFoundError, ValidationError
from escrowguard.common.logging import get_logger
from escrowguard.common.money import to_money
from escrowguard.db.models.booking import Booking
from escrowguard.db.models.escrow import EscrowTransaction
from escrowguard.db.models.user import User
from escrowguard.integrations.stripe_client import PaymentProcessor

logger = get_logger("escrow.ledger")

ESCROW_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.HELD: {EscrowStatus.RELEASED, EscrowStatus.DISPUTED, EscrowStatus.REFUNDED},
    EscrowStatus.DISPUTED: {
        EscrowStatus.RELEASED,
        EscrowStatus.PARTIALLY_RELEASED,
        EscrowStatus.REFUNDED,
    },
}


def assert_balanced(escrow: EscrowTransaction) -> None:
    if to_money(escrow.platform_fee) + to_money(escrow.vendor_amount) != to_money(escrow.amount):
        raise ValueError(f"Escrow {escrow.id} out of balance: fee + vendor share != amount")
    if to_money(escrow.amount) + to_money(escrow.refunded_amount) != to_money(escrow.original_amount):
        raise ValueError(f"Escrow {escrow.id} out of balance: amount + refunded != original")


def _move(escrow: EscrowTransaction, target: EscrowStatus) -> None:
    current = EscrowStatus(escrow.status)
    if target not in ESCROW_TRANSITIONS.get(current, set()):
        raise ConflictError(f"Escrow cannot move from '{current.value}' to '{target.value}'")
    escrow.status = target.value


class EscrowLedger:
    def __init__(self, processor: PaymentProcessor | None = None) -> None:
        if processor is None:
            from escrowguard.integrations.stripe_client import StripeClient

            processor = StripeClient()
        self.processor = processor

    async def get(self, db: AsyncSession, escrow_id: uuid.UUID) -> EscrowTransaction:
        result = await db.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.id == escrow_id,
                EscrowTransaction.is_deleted.is_(False),
            )
        )
        escrow = result.scalar_one_or_none()
        if not escrow:
            raise NotFoundError("Escrow", str(escrow_id))
        return escrow

    async def get_for_booking(self, db: AsyncSession, booking_id: uuid.UUID) -> EscrowTransaction:
        result = await db.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.booking_id == booking_id,
                EscrowTransaction.is_deleted.is_(False),
            )
        )
        escrow = result.scalar_one_or_none()
        if not escrow:
            raise NotFoundError("Escrow for booking", str(booking_id))
        return escrow

    async def create_hold(
        self,
        db: AsyncSession,
        booking: Booking,
        amount: Decimal,
        platform_fee: Decimal,
        currency: str = "chf",
        customer_ref: str | None = None,
    ) -> EscrowTransaction:
        """Record the escrow hold created when a booking's payment succeeds."""
        amount = to_money(amount)
        platform_fee = to_money(platform_fee)
        if amount <= 0:
            raise ValidationError("Escrow amount must be positive")
        if platform_fee < 0 or platform_fee > amount:
            raise ValidationError("Platform fee must be between 0 and the escrow amount")

        intent = await self.processor.hold_funds(
            amount,
            currency,
            customer_ref,
            idempotency_key=f"escrow-hold:{booking.id}",
            metadata={"booking_id": str(booking.id)},
        )

        escrow = EscrowTransaction(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            vendor_id=booking.vendor_id,
            original_amount=amount,
            amount=amount,
            refunded_amount=Decimal("0.00"),
            currency=currency,
            platform_fee=platform_fee,
            vendor_amount=amount - platform_fee,
            status=EscrowStatus.HELD.value,
            stripe_payment_intent_id=intent.get("id"),
        )
        assert_balanced(escrow)
        db.add(escrow)
        await db.flush()
        logger.info("Escrow %s held for booking %s: %s %s", escrow.id, booking.id, amount, currency)
        return escrow

    # ------------------------------------------------------------------
    # Normal (non-disputed) paths
    # ------------------------------------------------------------------

    async def release(self, db: AsyncSession, escrow: EscrowTransaction) -> EscrowTransaction:
        """Pay the vendor after normal completion. Disputed escrows are refused."""
        if escrow.status != EscrowStatus.HELD.value:
            raise BadRequestError(f"Only held escrow can be released (status '{escrow.status}')")

        vendor = await db.get(User, escrow.vendor_id)
        await self.processor.release_funds(
            escrow.stripe_payment_intent_id,
            Decimal("0.00"),
            to_money(escrow.vendor_amount),
            escrow.currency,
            vendor.stripe_account_id if vendor else None,
            idempotency_key=f"escrow-release:{escrow.id}",
        )
        _move(escrow, EscrowStatus.RELEASED)
        assert_balanced(escrow)
        await db.flush()
        logger.info("Escrow %s released to vendor (%s)", escrow.id, escrow.vendor_amount)
        return escrow

    async def refund(self, db: AsyncSession, escrow: EscrowTransaction, reason: str = "") -> EscrowTransaction:
        """Refund the customer in full, e.g. after a cancellation. Disputed escrows are refused."""
        if escrow.status != EscrowStatus.HELD.value:
            raise BadRequestError(f"Only held escrow can be refunded (status '{escrow.status}')")

        await self.processor.refund(
            escrow.stripe_payment_intent_id,
            to_money(escrow.original_amount),
            idempotency_key=f"escrow-refund:{escrow.id}",
            reason=reason,
        )
        _move(escrow, EscrowStatus.REFUNDED)
        escrow.refunded_amount = to_money(escrow.original_amount)
        escrow.amount = Decimal("0.00")
        escrow.platform_fee = Decimal("0.00")
        escrow.vendor_amount = Decimal("0.00")
        assert_balanced(escrow)
        await db.flush()
        logger.info("Escrow %s refunded to customer (%s)", escrow.id, escrow.refunded_amount)
        return escrow

    # ------------------------------------------------------------------
    # Dispute paths
    # ------------------------------------------------------------------

    def mark_disputed(self, escrow: EscrowTransaction) -> None:
        if escrow.status == EscrowStatus.DISPUTED.value:
            return
        _move(escrow, EscrowStatus.DISPUTED)
        logger.info("Escrow %s marked disputed", escrow.id)

    def split_target(
        self, escrow: EscrowTransaction, customer_amount: Decimal, vendor_amount: Decimal
    ) -> EscrowStatus:
        """Check a dispute split against the escrow and return the status it settles to."""
        if to_money(customer_amount) + to_money(vendor_amount) != to_money(escrow.original_amount):
            raise ValidationError("Split does not add up to the escrowed amount")
        if escrow.status != EscrowStatus.DISPUTED.value:
            raise ConflictError(f"Escrow {escrow.id} is not under dispute (status '{escrow.status}')")

        if to_money(customer_amount) == 0:
            return EscrowStatus.RELEASED
        if to_money(vendor_amount) == 0:
            return EscrowStatus.REFUNDED
        return EscrowStatus.PARTIALLY_RELEASED

    def apply_dispute_split(
        self, escrow: EscrowTransaction, customer_amount: Decimal, vendor_amount: Decimal
    ) -> EscrowStatus:
        """Book a settled dispute outcome once the processor has moved the funds.

        The booking commission is waived on disputed settlements.
        """
        customer_amount = to_money(customer_amount)
        vendor_amount = to_money(vendor_amount)
        target = self.split_target(escrow, customer_amount, vendor_amount)
        _move(escrow, target)

        escrow.refunded_amount = customer_amount
        escrow.amount = vendor_amount
        escrow.platform_fee = Decimal("0.00")
        escrow.vendor_amount = vendor_amount
        assert_balanced(escrow)
        logger.info(
            "Escrow %s settled by dispute: customer %s / vendor %s -> %s",
            escrow.id,
            customer_amount,
            vendor_amount,
            target.value,
        )
        return target

import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowguard.common.enums import EscrowStatus
from escrowguard.db.base import BaseModel


class EscrowTransaction(BaseModel):
    """Custody record for one booking's payment.

    Never deleted: it is the audit trail for the funds. ``amount`` is what is
    still attributed to the booking, so ``platform_fee + vendor_amount ==
    amount`` and ``amount + refunded_amount == original_amount`` always hold.
    """

    __tablename__ = "escrow_transactions"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=False, unique=True, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    original_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), default="chf", nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        String(30), nullable=False, default=EscrowStatus.HELD.value, index=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowguard.common.enums import FeeChargeStatus, FeeReason, Party
from escrowguard.db.base import BaseModel


class DisputeFeeCharge(BaseModel):
    __tablename__ = "dispute_fee_charges"
    __table_args__ = (UniqueConstraint("dispute_id", "reason", name="uq_dispute_fee_reason"),)

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    party: Mapped[Party] = mapped_column(String(20), nullable=False)
    reason: Mapped[FeeReason] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="chf")
    status: Mapped[FeeChargeStatus] = mapped_column(
        String(20), nullable=False, default=FeeChargeStatus.PENDING.value, index=True
    )

    # Dunning bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowguard.common.enums import SettlementKind, SettlementStatus
from escrowguard.db.base import BaseModel


class SettlementIntent(BaseModel):
    """Outbox record for moving escrowed funds once a dispute ends.

    Written in the same transaction as the ledger change; the processor call
    happens afterwards and reuses ``idempotency_key`` on every attempt.
    """

    __tablename__ = "settlement_intents"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, unique=True, index=True
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("escrow_transactions.id"), nullable=False, index=True
    )
    kind: Mapped[SettlementKind] = mapped_column(String(20), nullable=False)
    customer_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[SettlementStatus] = mapped_column(
        String(20), nullable=False, default=SettlementStatus.PENDING.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transfer_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

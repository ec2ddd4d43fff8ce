import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowguard.common.enums import DecisionStatus, DisputePhase, OptionResponse, Party
from escrowguard.db.base import BaseModel


class DisputeCase(BaseModel):
    __tablename__ = "dispute_cases"
    __table_args__ = (
        # One live dispute per escrow hold
        Index(
            "uq_dispute_active_escrow",
            "escrow_id",
            unique=True,
            postgresql_where=text("phase NOT IN ('resolved', 'external')"),
            sqlite_where=text("phase NOT IN ('resolved', 'external')"),
        ),
    )

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("escrow_transactions.id"), nullable=False, index=True
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    opened_by: Mapped[Party] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)

    # State machine
    phase: Mapped[DisputePhase] = mapped_column(
        String(30), nullable=False, default=DisputePhase.OPEN.value, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phase_entered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    phase_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    reminder_sent_for: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Outcome
    resolution_source: Mapped[str | None] = mapped_column(String(30), nullable=True)
    outcome_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    vendor_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # AI capability bookkeeping
    mediation_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decision_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_capability_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_operator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    operator_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    history: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)

    def party_for(self, user_id: uuid.UUID) -> Party | None:
        if user_id == self.customer_id:
            return Party.CUSTOMER
        if user_id == self.vendor_id:
            return Party.VENDOR
        return None

    def user_for(self, party: Party) -> uuid.UUID:
        return self.customer_id if party == Party.CUSTOMER else self.vendor_id


class NegotiationOffer(BaseModel):
    __tablename__ = "negotiation_offers"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, index=True
    )
    proposed_by: Mapped[Party] = mapped_column(String(20), nullable=False)
    customer_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def is_outstanding(self) -> bool:
        return not self.accepted and not self.withdrawn


class MediationOption(BaseModel):
    __tablename__ = "mediation_options"
    __table_args__ = (UniqueConstraint("dispute_id", "label", name="uq_mediation_option_label"),)

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(1), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    vendor_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    customer_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    key_factors: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    is_recommended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_response: Mapped[OptionResponse] = mapped_column(
        String(20), nullable=False, default=OptionResponse.PENDING.value
    )
    vendor_response: Mapped[OptionResponse] = mapped_column(
        String(20), nullable=False, default=OptionResponse.PENDING.value
    )

    @property
    def accepted_by_both(self) -> bool:
        return (
            self.customer_response == OptionResponse.ACCEPTED.value
            and self.vendor_response == OptionResponse.ACCEPTED.value
        )


class BindingDecision(BaseModel):
    """The single AI ruling for a dispute. Immutable once issued."""

    __tablename__ = "binding_decisions"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, unique=True, index=True
    )
    customer_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    vendor_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    customer_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    key_factors: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accept_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    customer_response: Mapped[str | None] = mapped_column(String(20), nullable=True)
    vendor_response: Mapped[str | None] = mapped_column(String(20), nullable=True)
    customer_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    vendor_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[DecisionStatus] = mapped_column(
        String(30), nullable=False, default=DecisionStatus.PENDING.value
    )

    def response_of(self, party: Party) -> str | None:
        return self.customer_response if party == Party.CUSTOMER else self.vendor_response


class DisputeAnalysis(BaseModel):
    """AI read of the case taken before mediation options are proposed."""

    __tablename__ = "dispute_analyses"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, index=True
    )
    evidence_analysis: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    description_analysis: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    behavior_analysis: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    overall_assessment: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    raw_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

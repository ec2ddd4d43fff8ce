import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import (
    ACTIVE_DISPUTE_PHASES,
    DISPUTABLE_BOOKING_STATUSES,
    DisputePhase,
    DisputeStatusFilter,
    EscrowStatus,
    FeeReason,
    NotificationType,
    Party,
    UserRole,
)
from escrowguard.common.exceptions import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
)
from escrowguard.common.logging import get_logger
from escrowguard.common.pagination import PaginationParams, paginate
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.evidence import get_latest_analysis
from escrowguard.core.disputes.state_machine import transition
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.core.escrow.ledger import EscrowLedger
from escrowguard.db.models.booking import Booking
from escrowguard.db.models.dispute import (
    BindingDecision,
    DisputeAnalysis,
    DisputeCase,
    MediationOption,
    NegotiationOffer,
)
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.settlement import SettlementIntent
from escrowguard.db.models.user import User

logger = get_logger("disputes.service")


@dataclass
class DisputeDetail:
    dispute: DisputeCase
    offers: list[NegotiationOffer] = field(default_factory=list)
    analysis: DisputeAnalysis | None = None
    options: list[MediationOption] = field(default_factory=list)
    decision: BindingDecision | None = None
    fees: list[DisputeFeeCharge] = field(default_factory=list)
    settlement: SettlementIntent | None = None


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> DisputeCase:
    result = await db.execute(
        select(DisputeCase).where(DisputeCase.id == dispute_id, DisputeCase.is_deleted.is_(False))
    )
    dispute = result.scalar_one_or_none()
    if not dispute:
        raise NotFoundError("Dispute", str(dispute_id))
    return dispute


async def load_for_party(db: AsyncSession, dispute_id: uuid.UUID, user: User) -> tuple[DisputeCase, Party]:
    """Load a dispute for an action only one of its parties may take."""
    dispute = await get_dispute(db, dispute_id)
    party = dispute.party_for(user.id)
    if party is None:
        raise PermissionDeniedError("Only the customer or vendor of this booking can act on the dispute")
    return dispute, party


async def get_decision(db: AsyncSession, dispute_id: uuid.UUID) -> BindingDecision | None:
    result = await db.execute(select(BindingDecision).where(BindingDecision.dispute_id == dispute_id))
    return result.scalar_one_or_none()


async def get_options(db: AsyncSession, dispute_id: uuid.UUID) -> list[MediationOption]:
    result = await db.execute(
        select(MediationOption)
        .where(MediationOption.dispute_id == dispute_id, MediationOption.is_deleted.is_(False))
        .order_by(MediationOption.label)
    )
    return list(result.scalars().all())


def available_actions(detail: DisputeDetail, party: Party | None, now: datetime) -> list[str]:
    """What ``party`` can do right now, as shown to the client."""
    dispute = detail.dispute
    if party is None:
        return []

    phase = DisputePhase(dispute.phase)
    deadline = ensure_utc(dispute.phase_deadline)
    if deadline is not None and now >= deadline:
        return []

    actions: list[str] = []
    if phase == DisputePhase.IN_NEGOTIATION:
        actions.append("propose_offer")
        outstanding = [o for o in detail.offers if o.is_outstanding]
        if any(o.proposed_by != party.value for o in outstanding):
            actions.append("accept_offer")
        if any(o.proposed_by == party.value for o in outstanding):
            actions.append("withdraw_offer")
    elif phase == DisputePhase.AI_MEDIATION and detail.options:
        actions.append("respond_to_option")
    elif phase == DisputePhase.AI_REVIEW and detail.decision is not None:
        if detail.decision.response_of(party) is None:
            actions += ["accept_decision", "reject_decision"]
    return actions


class DisputeService:
    def __init__(self, ledger: EscrowLedger | None = None, fees: FeeAssessor | None = None) -> None:
        self.ledger = ledger or EscrowLedger()
        self.fees = fees or FeeAssessor(self.ledger.processor)

    async def open_dispute(
        self,
        db: AsyncSession,
        user: User,
        booking_id: uuid.UUID,
        reason: str,
        effects: SideEffects,
        description: str | None = None,
        evidence: list[str] | None = None,
        now: datetime | None = None,
    ) -> DisputeCase:
        now = now or utcnow()

        result = await db.execute(
            select(Booking).where(Booking.id == booking_id, Booking.is_deleted.is_(False))
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking", str(booking_id))

        if user.id == booking.customer_id:
            party = Party.CUSTOMER
        elif user.id == booking.vendor_id:
            party = Party.VENDOR
        else:
            raise PermissionDeniedError("Only the customer or vendor of this booking can open a dispute")

        if booking.status not in [s.value for s in DISPUTABLE_BOOKING_STATUSES]:
            raise BadRequestError(f"A booking in status '{booking.status}' cannot be disputed")

        escrow = await self.ledger.get_for_booking(db, booking.id)
        if escrow.status not in (EscrowStatus.HELD.value, EscrowStatus.DISPUTED.value):
            raise BadRequestError(f"Escrow for this booking is already '{escrow.status}'")

        # At most one dispute per escrow, ever
        prior = await db.execute(
            select(DisputeCase.phase).where(
                DisputeCase.escrow_id == escrow.id,
                DisputeCase.is_deleted.is_(False),
            )
        )
        phases = set(prior.scalars().all())
        if phases & {p.value for p in ACTIVE_DISPUTE_PHASES}:
            raise ConflictError("An active dispute already exists for this booking")
        if DisputePhase.EXTERNAL.value in phases:
            raise ConflictError("This booking's dispute was escalated and is being resolved off-platform")
        if phases:
            raise ConflictError("This booking's dispute has already been resolved")

        self.ledger.mark_disputed(escrow)

        dispute = DisputeCase(
            escrow_id=escrow.id,
            booking_id=booking.id,
            customer_id=booking.customer_id,
            vendor_id=booking.vendor_id,
            opened_by=party.value,
            reason=reason,
            description=description,
            evidence=evidence or [],
            phase=DisputePhase.OPEN.value,
            version=0,
            phase_entered_at=now,
            history=[{"action": "opened", "by": party.value, "at": now.isoformat(), "reason": reason}],
        )
        db.add(dispute)
        try:
            await db.flush()
        except IntegrityError as e:
            raise ConflictError("An active dispute already exists for this booking") from e

        await transition(
            db,
            dispute,
            DisputePhase.OPEN,
            DisputePhase.IN_NEGOTIATION,
            action="negotiation_started",
            now=now,
            actor=party.value,
        )

        charge = await self.fees.assess(db, dispute, party, FeeReason.DISPUTE_OPENED)
        effects.collect_fee(charge.id)
        effects.notify(dispute.id, NotificationType.DISPUTE_OPENED.value, opened_by=party.value)

        logger.info("Dispute %s opened by %s on booking %s", dispute.id, party.value, booking.id)
        return dispute

    async def list_disputes(
        self,
        db: AsyncSession,
        user: User,
        status_filter: DisputeStatusFilter,
        params: PaginationParams,
    ) -> tuple[list[DisputeCase], int]:
        query = select(DisputeCase).where(DisputeCase.is_deleted.is_(False))
        if user.role != UserRole.ADMIN.value:
            query = query.where(
                (DisputeCase.customer_id == user.id) | (DisputeCase.vendor_id == user.id)
            )

        if status_filter == DisputeStatusFilter.ACTIVE:
            query = query.where(DisputeCase.phase.in_([p.value for p in ACTIVE_DISPUTE_PHASES]))
        elif status_filter == DisputeStatusFilter.RESOLVED:
            query = query.where(
                DisputeCase.phase.in_([DisputePhase.RESOLVED.value, DisputePhase.EXTERNAL.value])
            )

        if not params.sort_by:
            query = query.order_by(DisputeCase.created_at.desc())
        return await paginate(db, query, params, DisputeCase)

    async def list_flagged(self, db: AsyncSession) -> list[DisputeCase]:
        result = await db.execute(
            select(DisputeCase)
            .where(DisputeCase.needs_operator.is_(True), DisputeCase.is_deleted.is_(False))
            .order_by(DisputeCase.updated_at.desc())
        )
        return list(result.scalars().all())

    async def get_for_viewer(
        self, db: AsyncSession, dispute_id: uuid.UUID, user: User
    ) -> tuple[DisputeCase, Party | None]:
        dispute = await get_dispute(db, dispute_id)
        party = dispute.party_for(user.id)
        if party is None and user.role != UserRole.ADMIN.value:
            raise PermissionDeniedError("You are not a party to this dispute")
        return dispute, party

    async def load_detail(self, db: AsyncSession, dispute: DisputeCase) -> DisputeDetail:
        offers = (
            await db.execute(
                select(NegotiationOffer)
                .where(NegotiationOffer.dispute_id == dispute.id, NegotiationOffer.is_deleted.is_(False))
                .order_by(NegotiationOffer.created_at)
            )
        ).scalars().all()
        fees = (
            await db.execute(
                select(DisputeFeeCharge)
                .where(DisputeFeeCharge.dispute_id == dispute.id)
                .order_by(DisputeFeeCharge.created_at)
            )
        ).scalars().all()
        settlement = (
            await db.execute(select(SettlementIntent).where(SettlementIntent.dispute_id == dispute.id))
        ).scalar_one_or_none()

        return DisputeDetail(
            dispute=dispute,
            offers=list(offers),
            analysis=await get_latest_analysis(db, dispute.id),
            options=await get_options(db, dispute.id),
            decision=await get_decision(db, dispute.id),
            fees=list(fees),
            settlement=settlement,
        )

    async def flag_for_operator(self, db: AsyncSession, dispute_id: uuid.UUID, note: str) -> DisputeCase:
        dispute = await get_dispute(db, dispute_id)
        dispute.needs_operator = True
        dispute.operator_note = note
        await db.flush()
        logger.warning("Dispute %s flagged for an operator: %s", dispute_id, note)
        return dispute

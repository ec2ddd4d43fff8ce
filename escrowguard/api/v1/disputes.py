import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.api.deps import (
    get_arbitration,
    get_current_user,
    get_db,
    get_dispute_service,
    get_fee_assessor,
    get_mediation,
    get_negotiation,
    require_role,
)
from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import (
    DecisionResponse,
    DisputePhase,
    DisputeStatusFilter,
    OptionLabel,
    OptionResponse,
    UserRole,
)
from escrowguard.common.exceptions import NotFoundError
from escrowguard.common.pagination import PaginatedResponse, PaginationParams
from escrowguard.core.disputes.arbitration import BindingDecisionEngine
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.mediation import MediationProposalEngine
from escrowguard.core.disputes.negotiation import NegotiationExchange
from escrowguard.core.disputes.service import DisputeDetail, DisputeService, available_actions
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.db.models.dispute import (
    BindingDecision,
    DisputeAnalysis,
    DisputeCase,
    MediationOption,
    NegotiationOffer,
)
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.user import User

router = APIRouter(prefix="/disputes", tags=["Disputes"])


# ---------- Schemas ----------


class DisputeCreateRequest(BaseModel):
    booking_id: uuid.UUID
    reason: str = Field(min_length=1, max_length=100)
    description: str | None = None
    evidence: list[str] = Field(default_factory=list)


class OfferCreateRequest(BaseModel):
    customer_amount: Decimal
    vendor_amount: Decimal
    message: str | None = Field(default=None, max_length=2000)


class OptionRespondRequest(BaseModel):
    response: OptionResponse


class DecisionRespondRequest(BaseModel):
    response: DecisionResponse


class FeeWaiveRequest(BaseModel):
    note: str = Field(min_length=1, max_length=500)


class OfferResponse(BaseModel):
    id: uuid.UUID
    proposed_by: str
    customer_amount: Decimal
    vendor_amount: Decimal
    message: str | None
    accepted: bool
    withdrawn: bool
    created_at: str


class MediationOptionResponse(BaseModel):
    label: str
    title: str
    customer_percent: Decimal
    vendor_percent: Decimal
    customer_amount: Decimal
    vendor_amount: Decimal
    rationale: str
    key_factors: list[str]
    is_recommended: bool
    customer_response: str
    vendor_response: str


class BindingDecisionResponse(BaseModel):
    customer_percent: Decimal
    vendor_percent: Decimal
    customer_amount: Decimal
    vendor_amount: Decimal
    summary: str
    rationale: str
    key_factors: list[str]
    issued_at: str
    accept_deadline: str
    customer_response: str | None
    vendor_response: str | None
    status: str


class DisputeAnalysisResponse(BaseModel):
    evidence_analysis: dict | None
    description_analysis: dict | None
    behavior_analysis: dict | None
    overall_assessment: dict | None
    ai_model: str | None
    created_at: str


class FeeChargeResponse(BaseModel):
    id: uuid.UUID
    party: str
    reason: str
    amount: Decimal
    currency: str
    status: str
    attempts: int
    next_attempt_at: str | None


class SettlementResponse(BaseModel):
    status: str
    customer_amount: Decimal
    vendor_amount: Decimal
    attempts: int
    last_error: str | None
    completed_at: str | None


class DisputeResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    escrow_id: uuid.UUID
    opened_by: str
    reason: str
    phase: str
    phase_deadline: str | None
    version: int
    resolution_source: str | None
    customer_amount: Decimal | None
    vendor_amount: Decimal | None
    needs_operator: bool
    created_at: str
    resolved_at: str | None


class DisputeDetailResponse(DisputeResponse):
    description: str | None
    evidence: list[str]
    outcome_summary: str | None
    settled_at: str | None
    awaiting_proposal: bool
    awaiting_decision: bool
    available_actions: list[str]
    offers: list[OfferResponse]
    analysis: DisputeAnalysisResponse | None
    options: list[MediationOptionResponse]
    decision: BindingDecisionResponse | None
    fees: list[FeeChargeResponse]
    settlement: SettlementResponse | None
    history: list[dict]


# ---------- Endpoints ----------


@router.get("", response_model=PaginatedResponse[DisputeResponse])
async def list_disputes(
    status: DisputeStatusFilter = Query(DisputeStatusFilter.ALL),
    params: PaginationParams = Depends(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
):
    items, total = await service.list_disputes(db, current_user, status, params)
    return PaginatedResponse[DisputeResponse].build([_dispute_to_response(d) for d in items], total, params)


@router.get("/flagged", response_model=list[DisputeResponse])
async def list_flagged_disputes(
    current_user: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
):
    return [_dispute_to_response(d) for d in await service.list_flagged(db)]


@router.post("", response_model=DisputeDetailResponse, status_code=201)
async def open_dispute(
    body: DisputeCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
):
    effects = SideEffects()
    dispute = await service.open_dispute(
        db,
        current_user,
        body.booking_id,
        body.reason,
        effects,
        description=body.description,
        evidence=body.evidence,
    )
    await db.commit()
    effects.dispatch()
    return await _detail_response(db, service, dispute, current_user)


@router.get("/{dispute_id}", response_model=DisputeDetailResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
):
    dispute, _ = await service.get_for_viewer(db, dispute_id, current_user)
    return await _detail_response(db, service, dispute, current_user)


@router.post("/{dispute_id}/offers", response_model=OfferResponse, status_code=201)
async def propose_offer(
    dispute_id: uuid.UUID,
    body: OfferCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    negotiation: NegotiationExchange = Depends(get_negotiation),
):
    effects = SideEffects()
    offer = await negotiation.propose_offer(
        db,
        dispute_id,
        current_user,
        body.customer_amount,
        body.vendor_amount,
        effects,
        message=body.message,
    )
    await db.commit()
    effects.dispatch()
    return _offer_to_response(offer)


@router.post("/{dispute_id}/offers/{offer_id}/accept", response_model=DisputeDetailResponse)
async def accept_offer(
    dispute_id: uuid.UUID,
    offer_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    negotiation: NegotiationExchange = Depends(get_negotiation),
    service: DisputeService = Depends(get_dispute_service),
):
    effects = SideEffects()
    dispute = await negotiation.accept_offer(db, dispute_id, offer_id, current_user, effects)
    await db.commit()
    effects.dispatch()
    return await _detail_response(db, service, dispute, current_user)


@router.post("/{dispute_id}/offers/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    dispute_id: uuid.UUID,
    offer_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    negotiation: NegotiationExchange = Depends(get_negotiation),
):
    offer = await negotiation.withdraw_offer(db, dispute_id, offer_id, current_user)
    await db.commit()
    return _offer_to_response(offer)


@router.post("/{dispute_id}/options/{label}/respond", response_model=DisputeDetailResponse)
async def respond_to_option(
    dispute_id: uuid.UUID,
    label: OptionLabel,
    body: OptionRespondRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    mediation: MediationProposalEngine = Depends(get_mediation),
    service: DisputeService = Depends(get_dispute_service),
):
    effects = SideEffects()
    await mediation.respond_to_option(db, dispute_id, current_user, label, body.response, effects)
    await db.commit()
    effects.dispatch()
    dispute, _ = await service.get_for_viewer(db, dispute_id, current_user)
    return await _detail_response(db, service, dispute, current_user)


@router.post("/{dispute_id}/decision/respond", response_model=DisputeDetailResponse)
async def respond_to_decision(
    dispute_id: uuid.UUID,
    body: DecisionRespondRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    arbitration: BindingDecisionEngine = Depends(get_arbitration),
    service: DisputeService = Depends(get_dispute_service),
):
    effects = SideEffects()
    dispute = await arbitration.respond_to_decision(db, dispute_id, current_user, body.response, effects)
    await db.commit()
    effects.dispatch()
    return await _detail_response(db, service, dispute, current_user)


@router.post("/{dispute_id}/fees/{charge_id}/waive", response_model=FeeChargeResponse)
async def waive_fee(
    dispute_id: uuid.UUID,
    charge_id: uuid.UUID,
    body: FeeWaiveRequest,
    current_user: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
    fees: FeeAssessor = Depends(get_fee_assessor),
):
    charge = await fees.get(db, charge_id)
    if charge.dispute_id != dispute_id:
        raise NotFoundError("Fee charge", str(charge_id))
    charge = await fees.waive(db, charge_id, f"{body.note} (by {current_user.email})")
    await db.commit()
    return _fee_to_response(charge)


# ---------- Helpers ----------


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _dispute_fields(dispute: DisputeCase) -> dict:
    return dict(
        id=dispute.id,
        booking_id=dispute.booking_id,
        escrow_id=dispute.escrow_id,
        opened_by=dispute.opened_by,
        reason=dispute.reason,
        phase=dispute.phase,
        phase_deadline=_iso(dispute.phase_deadline),
        version=dispute.version,
        resolution_source=dispute.resolution_source,
        customer_amount=dispute.customer_amount,
        vendor_amount=dispute.vendor_amount,
        needs_operator=dispute.needs_operator,
        created_at=_iso(dispute.created_at),
        resolved_at=_iso(dispute.resolved_at),
    )


def _dispute_to_response(dispute: DisputeCase) -> DisputeResponse:
    return DisputeResponse(**_dispute_fields(dispute))


def _offer_to_response(offer: NegotiationOffer) -> OfferResponse:
    return OfferResponse(
        id=offer.id,
        proposed_by=offer.proposed_by,
        customer_amount=offer.customer_amount,
        vendor_amount=offer.vendor_amount,
        message=offer.message,
        accepted=offer.accepted,
        withdrawn=offer.withdrawn,
        created_at=_iso(offer.created_at),
    )


def _option_to_response(option: MediationOption) -> MediationOptionResponse:
    return MediationOptionResponse(
        label=option.label,
        title=option.title,
        customer_percent=option.customer_percent,
        vendor_percent=option.vendor_percent,
        customer_amount=option.customer_amount,
        vendor_amount=option.vendor_amount,
        rationale=option.rationale,
        key_factors=option.key_factors or [],
        is_recommended=option.is_recommended,
        customer_response=option.customer_response,
        vendor_response=option.vendor_response,
    )


def _decision_to_response(decision: BindingDecision) -> BindingDecisionResponse:
    return BindingDecisionResponse(
        customer_percent=decision.customer_percent,
        vendor_percent=decision.vendor_percent,
        customer_amount=decision.customer_amount,
        vendor_amount=decision.vendor_amount,
        summary=decision.summary,
        rationale=decision.rationale,
        key_factors=decision.key_factors or [],
        issued_at=_iso(decision.issued_at),
        accept_deadline=_iso(decision.accept_deadline),
        customer_response=decision.customer_response,
        vendor_response=decision.vendor_response,
        status=decision.status,
    )


def _analysis_to_response(analysis: DisputeAnalysis) -> DisputeAnalysisResponse:
    return DisputeAnalysisResponse(
        evidence_analysis=analysis.evidence_analysis,
        description_analysis=analysis.description_analysis,
        behavior_analysis=analysis.behavior_analysis,
        overall_assessment=analysis.overall_assessment,
        ai_model=analysis.ai_model,
        created_at=_iso(analysis.created_at),
    )


def _fee_to_response(charge: DisputeFeeCharge) -> FeeChargeResponse:
    return FeeChargeResponse(
        id=charge.id,
        party=charge.party,
        reason=charge.reason,
        amount=charge.amount,
        currency=charge.currency,
        status=charge.status,
        attempts=charge.attempts,
        next_attempt_at=_iso(charge.next_attempt_at),
    )


async def _detail_response(
    db: AsyncSession, service: DisputeService, dispute: DisputeCase, viewer: User
) -> DisputeDetailResponse:
    detail: DisputeDetail = await service.load_detail(db, dispute)
    phase = DisputePhase(dispute.phase)
    settlement = detail.settlement

    return DisputeDetailResponse(
        **_dispute_fields(dispute),
        description=dispute.description,
        evidence=dispute.evidence or [],
        outcome_summary=dispute.outcome_summary,
        settled_at=_iso(dispute.settled_at),
        awaiting_proposal=phase == DisputePhase.AI_MEDIATION and not detail.options,
        awaiting_decision=phase == DisputePhase.AI_REVIEW and detail.decision is None,
        available_actions=available_actions(detail, dispute.party_for(viewer.id), utcnow()),
        offers=[_offer_to_response(o) for o in detail.offers],
        analysis=_analysis_to_response(detail.analysis) if detail.analysis else None,
        options=[_option_to_response(o) for o in detail.options],
        decision=_decision_to_response(detail.decision) if detail.decision else None,
        fees=[_fee_to_response(f) for f in detail.fees],
        settlement=SettlementResponse(
            status=settlement.status,
            customer_amount=settlement.customer_amount,
            vendor_amount=settlement.vendor_amount,
            attempts=settlement.attempts,
            last_error=settlement.last_error,
            completed_at=_iso(settlement.completed_at),
        )
        if settlement
        else None,
        history=dispute.history or [],
    )

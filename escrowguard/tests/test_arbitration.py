import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from escrowguard.common.dates import ensure_utc
from escrowguard.common.enums import (
    DecisionResponse,
    DecisionStatus,
    DisputePhase,
    EscrowStatus,
    FeeReason,
)
from escrowguard.common.exceptions import ConflictError, InvalidPhaseError, ValidationError
from escrowguard.config import settings
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.state_machine import transition
from escrowguard.db.models.dispute import DisputeCase
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.settlement import SettlementIntent


@pytest.fixture
def t2(t0):
    return t0 + timedelta(hours=96)


@pytest.fixture
async def in_review(db_session, dispute, t2):
    await transition(
        db_session, dispute, DisputePhase.IN_NEGOTIATION, DisputePhase.AI_MEDIATION, action="deadline_expired", now=t2
    )
    await transition(
        db_session, dispute, DisputePhase.AI_MEDIATION, DisputePhase.AI_REVIEW, action="deadline_expired", now=t2
    )
    return dispute


@pytest.fixture
async def decision(db_session, arbitration, in_review, t2):
    return await arbitration.issue_decision(db_session, in_review.id, SideEffects(), now=t2)


@pytest.mark.asyncio
async def test_issue_decision_prices_split_and_opens_window(db_session, arbitration, provider, in_review, t2):
    effects = SideEffects()
    decision = await arbitration.issue_decision(db_session, in_review.id, effects, now=t2)

    assert decision.customer_amount == Decimal("80.00")
    assert decision.vendor_amount == Decimal("120.00")
    assert decision.status == DecisionStatus.PENDING.value
    assert ensure_utc(decision.accept_deadline) == t2 + timedelta(hours=24)
    assert ensure_utc(in_review.phase_deadline) == t2 + timedelta(hours=24)
    assert effects.notifications[-1][1] == "decision_issued"
    assert "history" in provider.last_evidence

    again = await arbitration.issue_decision(db_session, in_review.id, SideEffects(), now=t2)
    assert again.id == decision.id
    assert provider.decision_calls == 1


@pytest.mark.asyncio
async def test_exhausted_decision_attempts_flag_an_operator(db_session, arbitration, provider, in_review, t2):
    provider.fail_decision = True

    for _ in range(settings.DECISION_MAX_ATTEMPTS):
        assert await arbitration.issue_decision(db_session, in_review.id, SideEffects(), now=t2) is None

    assert in_review.decision_attempts == settings.DECISION_MAX_ATTEMPTS
    assert in_review.needs_operator is True
    assert "arbitration" in in_review.last_capability_error

    assert await arbitration.issue_decision(db_session, in_review.id, SideEffects(), now=t2) is None
    assert provider.decision_calls == settings.DECISION_MAX_ATTEMPTS
    assert in_review.phase == DisputePhase.AI_REVIEW.value


@pytest.mark.asyncio
async def test_rejection_escalates_and_charges_the_rejecting_party(
    db_session, arbitration, decision, in_review, vendor, escrow, t2
):
    effects = SideEffects()
    await arbitration.respond_to_decision(
        db_session, in_review.id, vendor, DecisionResponse.REJECT, effects, now=t2 + timedelta(hours=1)
    )

    assert in_review.phase == DisputePhase.EXTERNAL.value
    assert in_review.resolution_source == "escalation"
    assert decision.status == DecisionStatus.OVERRIDDEN_EXTERNAL.value
    assert escrow.status == EscrowStatus.DISPUTED.value

    fees = (
        await db_session.execute(
            select(DisputeFeeCharge).where(DisputeFeeCharge.reason == FeeReason.ESCALATION.value)
        )
    ).scalars().all()
    assert len(fees) == 1
    assert fees[0].party == "vendor"
    assert fees[0].amount == Decimal("25.00")
    assert effects.fee_charges == [str(fees[0].id)]

    assert (await db_session.execute(select(SettlementIntent))).scalar_one_or_none() is None


@pytest.mark.asyncio
async def test_non_opener_acceptance_binds_a_silent_opener(
    db_session, arbitration, executor, decision, in_review, vendor, escrow, t2
):
    effects = SideEffects()
    await arbitration.respond_to_decision(
        db_session, in_review.id, vendor, DecisionResponse.ACCEPT, effects, now=t2 + timedelta(hours=1)
    )

    assert in_review.phase == DisputePhase.RESOLVED.value
    assert in_review.resolution_source == "binding_decision"
    assert escrow.status == EscrowStatus.DISPUTED.value

    intent = await executor.execute_settlement(db_session, uuid.UUID(effects.settlements[0]))
    assert intent.status == "completed"
    assert escrow.status == EscrowStatus.PARTIALLY_RELEASED.value
    assert escrow.refunded_amount == Decimal("80.00")
    assert escrow.vendor_amount == Decimal("120.00")
    assert decision.status == DecisionStatus.EXECUTED.value


@pytest.mark.asyncio
async def test_opener_acceptance_alone_does_not_resolve(
    db_session, arbitration, decision, in_review, customer, vendor, t2
):
    now = t2 + timedelta(hours=1)
    await arbitration.respond_to_decision(db_session, in_review.id, customer, DecisionResponse.ACCEPT, SideEffects(), now=now)
    assert in_review.phase == DisputePhase.AI_REVIEW.value

    await arbitration.respond_to_decision(db_session, in_review.id, vendor, DecisionResponse.ACCEPT, SideEffects(), now=now)
    assert in_review.phase == DisputePhase.RESOLVED.value


@pytest.mark.asyncio
async def test_both_acceptances_needed_when_silence_does_not_count(
    db_session, monkeypatch, arbitration, decision, in_review, customer, vendor, t2
):
    monkeypatch.setattr(settings, "OPENER_SILENCE_IS_ACCEPTANCE", False)
    now = t2 + timedelta(hours=1)

    await arbitration.respond_to_decision(db_session, in_review.id, vendor, DecisionResponse.ACCEPT, SideEffects(), now=now)
    assert in_review.phase == DisputePhase.AI_REVIEW.value

    await arbitration.respond_to_decision(db_session, in_review.id, customer, DecisionResponse.ACCEPT, SideEffects(), now=now)
    assert in_review.phase == DisputePhase.RESOLVED.value


@pytest.mark.asyncio
async def test_each_party_answers_once(db_session, arbitration, decision, in_review, customer, t2):
    now = t2 + timedelta(hours=1)
    await arbitration.respond_to_decision(db_session, in_review.id, customer, DecisionResponse.ACCEPT, SideEffects(), now=now)
    with pytest.raises(ValidationError):
        await arbitration.respond_to_decision(
            db_session, in_review.id, customer, DecisionResponse.REJECT, SideEffects(), now=now
        )
    assert in_review.phase == DisputePhase.AI_REVIEW.value


@pytest.mark.asyncio
async def test_no_response_before_the_decision_exists(db_session, arbitration, in_review, vendor, t2):
    with pytest.raises(InvalidPhaseError):
        await arbitration.respond_to_decision(db_session, in_review.id, vendor, DecisionResponse.ACCEPT, SideEffects(), now=t2)


@pytest.mark.asyncio
async def test_no_response_after_the_window(db_session, arbitration, decision, in_review, vendor, t2):
    with pytest.raises(InvalidPhaseError):
        await arbitration.respond_to_decision(
            db_session, in_review.id, vendor, DecisionResponse.ACCEPT, SideEffects(), now=t2 + timedelta(hours=24)
        )


@pytest.mark.asyncio
async def test_escalated_dispute_cannot_reenter_the_phases(
    db_session, arbitration, service, decision, in_review, vendor, booking, escrow, t2
):
    await arbitration.respond_to_decision(
        db_session, in_review.id, vendor, DecisionResponse.REJECT, SideEffects(), now=t2 + timedelta(hours=1)
    )
    assert escrow.status == EscrowStatus.DISPUTED.value

    with pytest.raises(ConflictError):
        await service.open_dispute(db_session, vendor, booking.id, "second_attempt", SideEffects(), now=t2)

    disputes = (await db_session.execute(select(DisputeCase).where(DisputeCase.escrow_id == escrow.id))).scalars().all()
    assert [d.phase for d in disputes] == [DisputePhase.EXTERNAL.value]
    opening_fees = (
        await db_session.execute(
            select(DisputeFeeCharge).where(DisputeFeeCharge.reason == FeeReason.DISPUTE_OPENED.value)
        )
    ).scalars().all()
    assert len(opening_fees) == 1

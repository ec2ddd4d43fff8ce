from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from escrowguard.common.enums import DisputePhase
from escrowguard.common.exceptions import ConflictError, InvalidPhaseError
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.state_machine import PHASE_ORDER, can_transition, deadline_for, transition
from escrowguard.db.models.dispute import DisputeCase, NegotiationOffer
from escrowguard.db.models.settlement import SettlementIntent


def test_phases_never_move_backwards():
    for current in DisputePhase:
        for target in DisputePhase:
            if PHASE_ORDER[target] <= PHASE_ORDER[current]:
                assert not can_transition(current, target), (current, target)


def test_terminal_phases_are_final():
    for terminal in (DisputePhase.RESOLVED, DisputePhase.EXTERNAL):
        assert terminal.is_terminal
        assert not any(can_transition(terminal, target) for target in DisputePhase)


def test_only_phases_with_a_clock_have_deadlines(t0):
    assert deadline_for(DisputePhase.IN_NEGOTIATION, t0) == t0 + timedelta(hours=48)
    assert deadline_for(DisputePhase.AI_MEDIATION, t0) == t0 + timedelta(hours=48)
    assert deadline_for(DisputePhase.AI_REVIEW, t0) == t0 + timedelta(hours=24)
    assert deadline_for(DisputePhase.RESOLVED, t0) is None


@pytest.mark.asyncio
async def test_skipping_a_phase_is_refused(db_session, dispute, t0):
    with pytest.raises(InvalidPhaseError):
        await transition(
            db_session, dispute, DisputePhase.IN_NEGOTIATION, DisputePhase.EXTERNAL, action="skip", now=t0
        )
    with pytest.raises(InvalidPhaseError):
        await transition(
            db_session, dispute, DisputePhase.IN_NEGOTIATION, DisputePhase.OPEN, action="reopen", now=t0
        )
    assert dispute.phase == DisputePhase.IN_NEGOTIATION.value


@pytest.mark.asyncio
async def test_stale_expected_phase_raises_conflict(db_session, dispute, t0):
    await db_session.execute(
        update(DisputeCase)
        .where(DisputeCase.id == dispute.id)
        .values(phase=DisputePhase.AI_MEDIATION.value)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConflictError):
        await transition(
            db_session, dispute, DisputePhase.IN_NEGOTIATION, DisputePhase.AI_MEDIATION, action="deadline_expired", now=t0
        )


@pytest.mark.asyncio
async def test_party_action_losing_a_race_leaves_no_partial_writes(
    db_session, negotiation, dispute, customer, vendor, escrow, t0
):
    offer = await negotiation.propose_offer(
        db_session, dispute.id, vendor, Decimal("100.00"), Decimal("100.00"), SideEffects(), now=t0
    )
    # The scheduler moved the case on behind this session's back
    await db_session.execute(
        update(DisputeCase)
        .where(DisputeCase.id == dispute.id)
        .values(phase=DisputePhase.AI_MEDIATION.value)
        .execution_options(synchronize_session=False)
    )

    effects = SideEffects()
    with pytest.raises(ConflictError):
        await negotiation.accept_offer(db_session, dispute.id, offer.id, customer, effects, now=t0)

    stored = (
        await db_session.execute(select(NegotiationOffer).where(NegotiationOffer.id == offer.id))
    ).scalar_one()
    assert stored.accepted is False
    assert escrow.status == "disputed"
    assert (await db_session.execute(select(SettlementIntent))).scalar_one_or_none() is None
    assert not effects

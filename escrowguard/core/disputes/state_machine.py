"""Dispute phase state machine.

Phases only move forward along
``open -> in_negotiation -> ai_mediation -> ai_review -> resolved | external``.
Every transition is a compare-and-swap on the stored phase, so a party
action and a scheduler tick racing on the same deadline cannot both win.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.enums import DisputePhase
from escrowguard.common.exceptions import ConflictError, InvalidPhaseError
from escrowguard.common.logging import get_logger
from escrowguard.config import settings
from escrowguard.db.models.dispute import DisputeCase

logger = get_logger("disputes.state_machine")

PHASE_ORDER: dict[DisputePhase, int] = {
    DisputePhase.OPEN: 0,
    DisputePhase.IN_NEGOTIATION: 1,
    DisputePhase.AI_MEDIATION: 2,
    DisputePhase.AI_REVIEW: 3,
    DisputePhase.RESOLVED: 4,
    DisputePhase.EXTERNAL: 4,
}

ALLOWED_TRANSITIONS: dict[DisputePhase, set[DisputePhase]] = {
    DisputePhase.OPEN: {DisputePhase.IN_NEGOTIATION},
    DisputePhase.IN_NEGOTIATION: {DisputePhase.RESOLVED, DisputePhase.AI_MEDIATION},
    DisputePhase.AI_MEDIATION: {DisputePhase.RESOLVED, DisputePhase.AI_REVIEW},
    DisputePhase.AI_REVIEW: {DisputePhase.RESOLVED, DisputePhase.EXTERNAL},
}


def phase_duration(phase: DisputePhase) -> timedelta | None:
    hours = {
        DisputePhase.IN_NEGOTIATION: settings.NEGOTIATION_HOURS,
        DisputePhase.AI_MEDIATION: settings.MEDIATION_HOURS,
        DisputePhase.AI_REVIEW: settings.REVIEW_HOURS,
    }.get(phase)
    return timedelta(hours=hours) if hours is not None else None


def deadline_for(phase: DisputePhase, entered_at: datetime) -> datetime | None:
    duration = phase_duration(phase)
    return entered_at + duration if duration is not None else None


def can_transition(current: DisputePhase, target: DisputePhase) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def require_phase(dispute: DisputeCase, expected: DisputePhase, action: str) -> DisputePhase:
    current = DisputePhase(dispute.phase)
    if current != expected:
        raise InvalidPhaseError(action, current.value)
    return current


async def transition(
    db: AsyncSession,
    dispute: DisputeCase,
    expected: DisputePhase,
    target: DisputePhase,
    *,
    action: str,
    now: datetime,
    actor: str = "system",
    **details,
) -> DisputeCase:
    """Move ``dispute`` from ``expected`` to ``target``.

    Raises ``InvalidPhaseError`` for a move the state machine does not allow
    and ``ConflictError`` when the stored phase no longer matches
    ``expected``. On success the instance is refreshed from the database.
    """
    if not can_transition(expected, target):
        raise InvalidPhaseError(action, expected.value, f"Cannot move a dispute from '{expected.value}' to '{target.value}'")

    # Pending attribute changes must reach the database before the refresh below
    await db.flush()

    entry = {
        "action": action,
        "from": expected.value,
        "to": target.value,
        "by": actor,
        "at": now.isoformat(),
        **details,
    }
    values = {
        "phase": target.value,
        "version": DisputeCase.version + 1,
        "phase_entered_at": now,
        "phase_deadline": deadline_for(target, now),
        "reminder_sent_for": None,
        "history": [*(dispute.history or []), entry],
    }
    if target.is_terminal:
        values["resolved_at"] = now

    result = await db.execute(
        update(DisputeCase)
        .where(DisputeCase.id == dispute.id, DisputeCase.phase == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info(
            "Transition %s -> %s lost for dispute %s (%s)", expected.value, target.value, dispute.id, action
        )
        raise ConflictError(
            f"Dispute {dispute.id} is no longer in phase '{expected.value}'; reload and retry"
        )

    await db.refresh(dispute)
    logger.info(
        "Dispute %s: %s -> %s (%s by %s)", dispute.id, expected.value, target.value, action, actor
    )
    return dispute

"""Periodic clock that drives disputes forward when parties go quiet."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import ACTIVE_DISPUTE_PHASES, DisputePhase, NotificationType
from escrowguard.common.exceptions import ConflictError
from escrowguard.common.logging import get_logger
from escrowguard.config import settings
from escrowguard.core.disputes.arbitration import escalating_party_on_expiry
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.service import get_decision, get_options
from escrowguard.core.disputes.state_machine import transition
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.models.dispute import DisputeCase

logger = get_logger("disputes.scheduler")

# Forced moves when a phase deadline lapses
EXPIRY_TARGETS: dict[DisputePhase, DisputePhase] = {
    DisputePhase.IN_NEGOTIATION: DisputePhase.AI_MEDIATION,
    DisputePhase.AI_MEDIATION: DisputePhase.AI_REVIEW,
    DisputePhase.AI_REVIEW: DisputePhase.EXTERNAL,
}


@dataclass
class TickReport:
    scanned: int = 0
    transitioned: list[str] = field(default_factory=list)
    reminded: list[str] = field(default_factory=list)
    options_requested: list[str] = field(default_factory=list)
    decisions_requested: list[str] = field(default_factory=list)
    conflicts: int = 0
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "transitioned": self.transitioned,
            "reminded": self.reminded,
            "options_requested": self.options_requested,
            "decisions_requested": self.decisions_requested,
            "conflicts": self.conflicts,
            "failed": self.failed,
        }

    def merge(self, other: "TickReport") -> None:
        self.transitioned.extend(other.transitioned)
        self.reminded.extend(other.reminded)
        self.options_requested.extend(other.options_requested)
        self.decisions_requested.extend(other.decisions_requested)


class PhaseScheduler:
    def __init__(self, executor: ResolutionExecutor | None = None) -> None:
        self.executor = executor or ResolutionExecutor()

    async def tick(
        self, db: AsyncSession, effects: SideEffects, now: datetime | None = None
    ) -> TickReport:
        """Scan every live dispute once. Safe to run repeatedly and concurrently."""
        now = now or utcnow()
        report = TickReport()

        result = await db.execute(
            select(DisputeCase)
            .where(
                DisputeCase.phase.in_([p.value for p in ACTIVE_DISPUTE_PHASES]),
                DisputeCase.is_deleted.is_(False),
            )
            .order_by(DisputeCase.phase_deadline)
        )
        disputes = result.scalars().all()
        report.scanned = len(disputes)

        for dispute in disputes:
            dispute_id = dispute.id
            # Each case runs in its own savepoint; its effects count only if it is released
            case_effects = SideEffects()
            case_report = TickReport()
            try:
                async with db.begin_nested():
                    await self._process(db, dispute, case_effects, now, case_report)
            except ConflictError:
                # A party action or another tick got there first
                report.conflicts += 1
                continue
            except Exception as e:
                logger.exception("Scheduler could not process dispute %s", dispute_id)
                report.failed.append(str(dispute_id))
                await self._flag_for_operator(db, dispute_id, f"Scheduler error: {e}")
                await db.refresh(dispute)
                continue
            effects.merge(case_effects)
            report.merge(case_report)

        if report.transitioned or report.reminded or report.failed:
            logger.info(
                "Scheduler tick: %d scanned, %d transitioned, %d reminded, %d conflicts, %d failed",
                report.scanned,
                len(report.transitioned),
                len(report.reminded),
                report.conflicts,
                len(report.failed),
            )
        return report

    async def _process(
        self,
        db: AsyncSession,
        dispute: DisputeCase,
        effects: SideEffects,
        now: datetime,
        report: TickReport,
    ) -> None:
        phase = DisputePhase(dispute.phase)
        deadline = ensure_utc(dispute.phase_deadline)

        if deadline is not None and now >= deadline:
            if await self._expire(db, dispute, phase, effects, now):
                report.transitioned.append(str(dispute.id))
                return

        if phase == DisputePhase.AI_MEDIATION:
            if dispute.mediation_attempts < settings.MEDIATION_MAX_ATTEMPTS and not await get_options(db, dispute.id):
                effects.request_options(dispute.id)
                report.options_requested.append(str(dispute.id))
        elif phase == DisputePhase.AI_REVIEW:
            if (
                not dispute.needs_operator
                and dispute.decision_attempts < settings.DECISION_MAX_ATTEMPTS
                and await get_decision(db, dispute.id) is None
            ):
                effects.request_decision(dispute.id)
                report.decisions_requested.append(str(dispute.id))

        if deadline is not None and now < deadline:
            if await self._remind(db, dispute, phase, deadline, effects, now):
                report.reminded.append(str(dispute.id))

    async def _expire(
        self,
        db: AsyncSession,
        dispute: DisputeCase,
        phase: DisputePhase,
        effects: SideEffects,
        now: datetime,
    ) -> bool:
        target = EXPIRY_TARGETS.get(phase)
        if target is None:
            return False

        if phase == DisputePhase.AI_REVIEW:
            decision = await get_decision(db, dispute.id)
            if decision is None:
                # Nothing to accept yet; the case waits for a decision or an operator
                return False
            escalating = escalating_party_on_expiry(dispute, decision)
            await transition(
                db, dispute, phase, target, action="decision_window_expired", now=now, escalated_by=escalating.value
            )
            charge = await self.executor.apply_external(
                db, dispute, escalating, "Binding decision window expired without acceptance"
            )
            effects.collect_fee(charge.id)
            effects.notify(
                dispute.id,
                NotificationType.DISPUTE_ESCALATED.value,
                escalated_by=escalating.value,
                reason="deadline",
            )
            return True

        await transition(db, dispute, phase, target, action="deadline_expired", now=now)
        if target == DisputePhase.AI_MEDIATION:
            effects.request_options(dispute.id)
        else:
            effects.request_decision(dispute.id)
        effects.notify(dispute.id, NotificationType.PHASE_CHANGED.value, phase=target.value, reason="deadline")
        return True

    async def _remind(
        self,
        db: AsyncSession,
        dispute: DisputeCase,
        phase: DisputePhase,
        deadline: datetime,
        effects: SideEffects,
        now: datetime,
    ) -> bool:
        if deadline - now > timedelta(hours=settings.DEADLINE_REMINDER_HOURS):
            return False
        if dispute.reminder_sent_for == phase.value:
            return False

        result = await db.execute(
            update(DisputeCase)
            .where(
                DisputeCase.id == dispute.id,
                DisputeCase.phase == phase.value,
                or_(DisputeCase.reminder_sent_for.is_(None), DisputeCase.reminder_sent_for != phase.value),
            )
            .values(reminder_sent_for=phase.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await db.refresh(dispute)

        effects.notify(
            dispute.id,
            NotificationType.DEADLINE_APPROACHING.value,
            phase=phase.value,
            deadline=deadline.isoformat(),
        )
        return True

    async def _flag_for_operator(self, db: AsyncSession, dispute_id, note: str) -> None:
        await db.execute(
            update(DisputeCase)
            .where(DisputeCase.id == dispute_id)
            .values(needs_operator=True, operator_note=note[:1000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

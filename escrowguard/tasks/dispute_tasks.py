import asyncio
import uuid

from escrowguard.common.logging import get_logger
from escrowguard.tasks.celery_app import app

logger = get_logger("tasks.dispute")


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@app.task(name="escrowguard.tasks.dispute_tasks.run_phase_scheduler")
def run_phase_scheduler():
    """Celery Beat task: force deadline transitions and send reminders."""

    async def _tick():
        from escrowguard.core.disputes.effects import SideEffects
        from escrowguard.core.disputes.scheduler import PhaseScheduler
        from escrowguard.db.session import async_session_factory

        effects = SideEffects()
        async with async_session_factory() as db:
            try:
                report = await PhaseScheduler().tick(db, effects)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error("Phase scheduler tick failed: %s", e)
                raise
        effects.dispatch()
        return report.as_dict()

    return _run_async(_tick())


@app.task(name="escrowguard.tasks.dispute_tasks.generate_mediation_options")
def generate_mediation_options(dispute_id: str):
    logger.info("Generating mediation options for dispute %s", dispute_id)

    async def _generate():
        from sqlalchemy.exc import IntegrityError

        from escrowguard.core.disputes.effects import SideEffects
        from escrowguard.core.disputes.mediation import MediationProposalEngine
        from escrowguard.core.disputes.service import DisputeService
        from escrowguard.db.session import async_session_factory

        effects = SideEffects()
        async with async_session_factory() as db:
            try:
                options = await MediationProposalEngine().generate_options(db, uuid.UUID(dispute_id), effects)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Options for dispute %s were stored by a concurrent run", dispute_id)
                return 0
            except Exception as e:
                await db.rollback()
                logger.error("Mediation failed for dispute %s, fallback included: %s", dispute_id, e)
                await _flag(DisputeService, async_session_factory, dispute_id, f"Mediation and fallback failed: {e}")
                raise
        effects.dispatch()
        return len(options)

    return _run_async(_generate())


@app.task(name="escrowguard.tasks.dispute_tasks.issue_binding_decision")
def issue_binding_decision(dispute_id: str):
    logger.info("Requesting binding decision for dispute %s", dispute_id)

    async def _issue():
        from escrowguard.core.disputes.arbitration import BindingDecisionEngine
        from escrowguard.core.disputes.effects import SideEffects
        from escrowguard.db.session import async_session_factory

        effects = SideEffects()
        async with async_session_factory() as db:
            try:
                decision = await BindingDecisionEngine().issue_decision(db, uuid.UUID(dispute_id), effects)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error("Binding decision failed for dispute %s: %s", dispute_id, e)
                raise
        effects.dispatch()
        return str(decision.id) if decision else None

    return _run_async(_issue())


@app.task(name="escrowguard.tasks.dispute_tasks.execute_settlement")
def execute_settlement(intent_id: str):
    logger.info("Executing settlement %s", intent_id)

    async def _settle():
        from escrowguard.core.escrow.resolution import ResolutionExecutor
        from escrowguard.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                intent = await ResolutionExecutor().execute_settlement(db, uuid.UUID(intent_id))
                await db.commit()
                return intent.status
            except Exception as e:
                await db.rollback()
                logger.error("Settlement %s crashed: %s", intent_id, e)
                raise

    return _run_async(_settle())


@app.task(name="escrowguard.tasks.dispute_tasks.retry_pending_settlements")
def retry_pending_settlements():
    """Celery Beat task: re-drive settlement intents that have not completed."""

    async def _retry():
        from escrowguard.common.enums import SettlementStatus
        from escrowguard.core.escrow.resolution import ResolutionExecutor
        from escrowguard.db.session import async_session_factory

        completed = 0
        async with async_session_factory() as db:
            try:
                executor = ResolutionExecutor()
                for intent in await executor.pending_settlements(db, grace_minutes=5):
                    intent = await executor.execute_settlement(db, intent.id)
                    # Commit per intent so one failure never undoes another's transfer record
                    await db.commit()
                    if intent.status == SettlementStatus.COMPLETED.value:
                        completed += 1
            except Exception as e:
                await db.rollback()
                logger.error("Settlement retry sweep failed: %s", e)
                raise
        if completed:
            logger.info("Settlement sweep completed %d intents", completed)
        return completed

    return _run_async(_retry())


@app.task(name="escrowguard.tasks.dispute_tasks.collect_fee")
def collect_fee(charge_id: str):
    logger.info("Collecting dispute fee %s", charge_id)

    async def _collect():
        from escrowguard.core.escrow.fees import FeeAssessor
        from escrowguard.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                charge = await FeeAssessor().collect(db, uuid.UUID(charge_id))
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error("Fee collection %s crashed: %s", charge_id, e)
                raise
        if charge.status == "charged":
            send_dispute_notification.delay(
                str(charge.dispute_id),
                "fee_charged",
                {"amount": str(charge.amount), "currency": charge.currency.upper()},
            )
        return charge.status

    return _run_async(_collect())


@app.task(name="escrowguard.tasks.dispute_tasks.retry_failed_fees")
def retry_failed_fees():
    """Celery Beat task: dunning for fee charges whose retry time has come."""

    async def _retry():
        from escrowguard.core.escrow.fees import FeeAssessor
        from escrowguard.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                fees = FeeAssessor()
                due = await fees.due_for_retry(db)
                for charge in due:
                    await fees.collect(db, charge.id)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error("Fee dunning sweep failed: %s", e)
                raise
        if due:
            logger.info("Retried %d failed dispute fees", len(due))
        return len(due)

    return _run_async(_retry())


@app.task(name="escrowguard.tasks.dispute_tasks.send_dispute_notification")
def send_dispute_notification(dispute_id: str, category: str, context: dict | None = None):
    async def _send():
        from escrowguard.core.notifications.service import notify_dispute_parties
        from escrowguard.db.session import async_session_factory

        async with async_session_factory() as db:
            try:
                created = await notify_dispute_parties(db, uuid.UUID(dispute_id), category, context)
                await db.commit()
                return len(created)
            except Exception as e:
                await db.rollback()
                # Notifications never affect the dispute; log and drop
                logger.error("Notification %s for dispute %s failed: %s", category, dispute_id, e)
                return 0

    return _run_async(_send())


async def _flag(service_cls, session_factory, dispute_id: str, note: str) -> None:
    async with session_factory() as db:
        try:
            await service_cls().flag_for_operator(db, uuid.UUID(dispute_id), note)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error("Could not flag dispute %s for an operator: %s", dispute_id, e)

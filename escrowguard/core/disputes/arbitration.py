"""Phase 3: one binding AI decision with an accept/escalate window."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import (
    DecisionResponse,
    DisputePhase,
    NotificationType,
    Party,
    ResolutionSource,
)
from escrowguard.common.exceptions import CapabilityUnavailableError, InvalidPhaseError, ValidationError
from escrowguard.common.logging import get_logger
from escrowguard.common.money import split_by_percent, to_money
from escrowguard.config import settings
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.evidence import build_evidence
from escrowguard.core.disputes.schemas import parse_decision
from escrowguard.core.disputes.service import get_decision, get_dispute, load_for_party
from escrowguard.core.disputes.state_machine import require_phase, transition
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.models.dispute import BindingDecision, DisputeCase
from escrowguard.integrations.ai_client import MediationProvider

logger = get_logger("disputes.arbitration")


def decision_accepted(dispute: DisputeCase, decision: BindingDecision) -> bool:
    """Both parties accepted, or the non-opener did and the opener's silence counts."""
    accepted = DecisionResponse.ACCEPT.value
    opener = Party(dispute.opened_by)
    if decision.response_of(opener.other) != accepted:
        return False
    if decision.response_of(opener) == accepted:
        return True
    return settings.OPENER_SILENCE_IS_ACCEPTANCE


def escalating_party_on_expiry(dispute: DisputeCase, decision: BindingDecision) -> Party:
    """Who carries the escalation fee when the window lapses without acceptance."""
    opener = Party(dispute.opened_by)
    if decision.response_of(opener.other) != DecisionResponse.ACCEPT.value:
        return opener.other
    return opener


class BindingDecisionEngine:
    def __init__(
        self,
        provider: MediationProvider | None = None,
        executor: ResolutionExecutor | None = None,
    ) -> None:
        if provider is None:
            from escrowguard.integrations.ai_client import AIClient

            provider = AIClient()
        self.provider = provider
        self.executor = executor or ResolutionExecutor()

    async def issue_decision(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        effects: SideEffects,
        now: datetime | None = None,
    ) -> BindingDecision | None:
        """Phase-entry action for ``ai_review``; one provider call per invocation.

        A recorded decision is never regenerated. When the provider fails the
        phase stays ``ai_review`` and the scheduler asks again until
        ``DECISION_MAX_ATTEMPTS`` is spent, after which an operator is needed.
        """
        now = now or utcnow()
        dispute = await get_dispute(db, dispute_id)
        if dispute.phase != DisputePhase.AI_REVIEW.value:
            logger.info("Dispute %s is in '%s'; skipping decision", dispute.id, dispute.phase)
            return None

        existing = await get_decision(db, dispute.id)
        if existing:
            return existing

        if dispute.decision_attempts >= settings.DECISION_MAX_ATTEMPTS:
            return None

        dispute.decision_attempts += 1
        try:
            evidence = await build_evidence(db, dispute, include_mediation=True)
            proposal = parse_decision(await self.provider.issue_decision(evidence))
        except CapabilityUnavailableError as e:
            dispute.last_capability_error = e.detail
            logger.warning(
                "Decision attempt %d/%d failed for dispute %s: %s",
                dispute.decision_attempts,
                settings.DECISION_MAX_ATTEMPTS,
                dispute.id,
                e.detail,
            )
            if dispute.decision_attempts >= settings.DECISION_MAX_ATTEMPTS:
                dispute.needs_operator = True
                dispute.operator_note = f"Binding decision unavailable: {e.detail}"
                logger.error("Dispute %s flagged for an operator: no binding decision", dispute.id)
            await db.flush()
            return None

        escrow = await self.executor.ledger.get(db, dispute.escrow_id)
        customer_amount, vendor_amount = split_by_percent(escrow.original_amount, proposal.customer_percent)
        accept_deadline = now + timedelta(hours=settings.REVIEW_HOURS)

        decision = BindingDecision(
            dispute_id=dispute.id,
            customer_percent=to_money(proposal.customer_percent),
            vendor_percent=to_money(proposal.vendor_percent),
            customer_amount=customer_amount,
            vendor_amount=vendor_amount,
            summary=proposal.summary,
            rationale=proposal.reasoning,
            key_factors=proposal.key_factors,
            issued_at=now,
            accept_deadline=accept_deadline,
        )
        db.add(decision)
        # The accept window runs from issuance, not from phase entry
        dispute.phase_deadline = accept_deadline
        dispute.last_capability_error = None
        await db.flush()

        effects.notify(
            dispute.id,
            NotificationType.DECISION_ISSUED.value,
            customer_amount=str(customer_amount),
            vendor_amount=str(vendor_amount),
            accept_deadline=accept_deadline.isoformat(),
        )
        logger.info(
            "Binding decision %s for dispute %s: customer %s / vendor %s",
            decision.id,
            dispute.id,
            customer_amount,
            vendor_amount,
        )
        return decision

    async def respond_to_decision(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        user,
        response: DecisionResponse,
        effects: SideEffects,
        now: datetime | None = None,
    ) -> DisputeCase:
        now = now or utcnow()
        dispute, party = await load_for_party(db, dispute_id, user)
        require_phase(dispute, DisputePhase.AI_REVIEW, "respond to the binding decision")

        decision = await get_decision(db, dispute.id)
        if decision is None:
            raise InvalidPhaseError(
                "respond to the binding decision", dispute.phase, "The binding decision has not been issued yet"
            )
        if now >= ensure_utc(decision.accept_deadline):
            raise InvalidPhaseError(
                "respond to the binding decision", dispute.phase, "The decision window has closed"
            )

        # Exactly one answer per party: only fill an empty slot
        if party == Party.CUSTOMER:
            column, slot, answered_at = "customer_response", BindingDecision.customer_response, "customer_responded_at"
        else:
            column, slot, answered_at = "vendor_response", BindingDecision.vendor_response, "vendor_responded_at"
        result = await db.execute(
            update(BindingDecision)
            .where(BindingDecision.id == decision.id, slot.is_(None))
            .values({column: response.value, answered_at: now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ValidationError("You have already responded to this decision")
        await db.refresh(decision)
        logger.info("Dispute %s: %s answered '%s' to the binding decision", dispute.id, party.value, response.value)

        if response == DecisionResponse.REJECT:
            await transition(
                db,
                dispute,
                DisputePhase.AI_REVIEW,
                DisputePhase.EXTERNAL,
                action="decision_rejected",
                now=now,
                actor=party.value,
            )
            charge = await self.executor.apply_external(
                db, dispute, party, f"Binding decision rejected by {party.value}; escalated externally"
            )
            effects.collect_fee(charge.id)
            effects.notify(dispute.id, NotificationType.DISPUTE_ESCALATED.value, escalated_by=party.value)
            return dispute

        if decision_accepted(dispute, decision):
            await transition(
                db,
                dispute,
                DisputePhase.AI_REVIEW,
                DisputePhase.RESOLVED,
                action="decision_accepted",
                now=now,
                actor=party.value,
            )
            intent = await self.executor.apply_split(
                db,
                dispute,
                decision.customer_amount,
                decision.vendor_amount,
                ResolutionSource.BINDING_DECISION,
                decision.summary,
            )
            effects.settle(intent.id)
            effects.notify(
                dispute.id,
                NotificationType.DISPUTE_RESOLVED.value,
                source=ResolutionSource.BINDING_DECISION.value,
                customer_amount=str(decision.customer_amount),
                vendor_amount=str(decision.vendor_amount),
            )
        return dispute

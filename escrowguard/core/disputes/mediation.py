"""Phase 2: three AI-proposed splits that both parties may converge on."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import (
    DisputePhase,
    NotificationType,
    OptionLabel,
    OptionResponse,
    Party,
    ResolutionSource,
)
from escrowguard.common.exceptions import (
    CapabilityUnavailableError,
    ConflictError,
    InvalidPhaseError,
    NotFoundError,
    ValidationError,
)
from escrowguard.common.logging import get_logger
from escrowguard.common.money import split_by_percent, to_money
from escrowguard.config import settings
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.evidence import build_evidence, get_latest_analysis
from escrowguard.core.disputes.schemas import ProposedOption, parse_analysis, parse_options
from escrowguard.core.disputes.service import get_dispute, get_options, load_for_party
from escrowguard.core.disputes.state_machine import require_phase, transition
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.models.dispute import DisputeAnalysis, DisputeCase, MediationOption
from escrowguard.integrations.ai_client import MediationProvider

logger = get_logger("disputes.mediation")


class MediationProposalEngine:
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

    async def analyze_case(self, db: AsyncSession, dispute: DisputeCase) -> DisputeAnalysis | None:
        """Take the AI read of the case that mediation options are drafted from.

        Reuses the latest stored analysis. A provider failure is logged and
        options are drafted without one; it does not use up mediation attempts.
        """
        existing = await get_latest_analysis(db, dispute.id)
        if existing is not None:
            return existing

        try:
            evidence = await build_evidence(db, dispute)
            result = parse_analysis(await self.provider.analyze(evidence))
        except CapabilityUnavailableError as e:
            logger.warning("Case analysis unavailable for dispute %s: %s", dispute.id, e.detail)
            return None

        analysis = DisputeAnalysis(
            dispute_id=dispute.id,
            evidence_analysis=result.evidence_analysis,
            description_analysis=result.description_analysis,
            behavior_analysis=result.behavior_analysis,
            overall_assessment=result.overall_assessment,
            raw_response=result.model_dump(by_alias=True, exclude={"model", "usage"}),
            ai_model=result.model,
            prompt_tokens=result.usage.get("prompt_tokens"),
            completion_tokens=result.usage.get("completion_tokens"),
        )
        db.add(analysis)
        await db.flush()
        logger.info("Stored case analysis for dispute %s", dispute.id)
        return analysis

    async def _request_options(self, db: AsyncSession, dispute: DisputeCase) -> list[ProposedOption] | None:
        evidence = await build_evidence(db, dispute)
        for attempt in range(1, settings.MEDIATION_MAX_ATTEMPTS + 1):
            dispute.mediation_attempts = (dispute.mediation_attempts or 0) + 1
            try:
                payload = await self.provider.propose_options(evidence)
                return parse_options(payload)
            except CapabilityUnavailableError as e:
                dispute.last_capability_error = e.detail
                logger.warning(
                    "Mediation attempt %d/%d failed for dispute %s: %s",
                    attempt,
                    settings.MEDIATION_MAX_ATTEMPTS,
                    dispute.id,
                    e.detail,
                )
        return None

    async def generate_options(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        effects: SideEffects,
        now: datetime | None = None,
    ) -> list[MediationOption]:
        """Phase-entry action for ``ai_mediation``.

        Retries the provider within its budget; if no valid set of three
        options comes back the dispute skips straight to ``ai_review``.
        A no-op when options already exist or the phase has moved on.
        """
        now = now or utcnow()
        dispute = await get_dispute(db, dispute_id)
        if dispute.phase != DisputePhase.AI_MEDIATION.value:
            logger.info("Dispute %s is in '%s'; skipping option generation", dispute.id, dispute.phase)
            return []

        existing = await get_options(db, dispute.id)
        if existing:
            return existing

        await self.analyze_case(db, dispute)
        proposals = await self._request_options(db, dispute)
        if proposals is None:
            logger.warning("Mediation unavailable for dispute %s; moving to binding review", dispute.id)
            try:
                await transition(
                    db,
                    dispute,
                    DisputePhase.AI_MEDIATION,
                    DisputePhase.AI_REVIEW,
                    action="mediation_unavailable",
                    now=now,
                    error=dispute.last_capability_error,
                )
            except ConflictError:
                logger.info("Dispute %s moved on before the mediation fallback", dispute.id)
                return []
            effects.request_decision(dispute.id)
            effects.notify(
                dispute.id,
                NotificationType.PHASE_CHANGED.value,
                phase=DisputePhase.AI_REVIEW.value,
                reason="mediation_unavailable",
            )
            return []

        escrow = await self.executor.ledger.get(db, dispute.escrow_id)
        total = to_money(escrow.original_amount)
        options = []
        for proposal in proposals:
            customer_amount, vendor_amount = split_by_percent(total, proposal.customer_percent)
            option = MediationOption(
                dispute_id=dispute.id,
                label=proposal.label.value,
                title=proposal.title,
                customer_percent=to_money(proposal.customer_percent),
                vendor_percent=to_money(proposal.vendor_percent),
                customer_amount=customer_amount,
                vendor_amount=vendor_amount,
                rationale=proposal.reasoning,
                key_factors=proposal.key_factors,
                is_recommended=proposal.is_recommended,
            )
            db.add(option)
            options.append(option)
        dispute.last_capability_error = None
        await db.flush()

        effects.notify(dispute.id, NotificationType.OPTIONS_READY.value)
        logger.info("Stored %d mediation options for dispute %s", len(options), dispute.id)
        return options

    async def respond_to_option(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        user,
        label: OptionLabel,
        response: OptionResponse,
        effects: SideEffects,
        now: datetime | None = None,
    ) -> MediationOption:
        """Record one party's answer to one option; resolves on dual acceptance."""
        now = now or utcnow()
        dispute, party = await load_for_party(db, dispute_id, user)
        require_phase(dispute, DisputePhase.AI_MEDIATION, "respond to a mediation option")
        deadline = ensure_utc(dispute.phase_deadline)
        if deadline is not None and now >= deadline:
            raise InvalidPhaseError("respond to a mediation option", dispute.phase, "The mediation window has closed")
        if response == OptionResponse.PENDING:
            raise ValidationError("Response must be 'accepted' or 'rejected'")

        result = await db.execute(
            select(MediationOption).where(
                MediationOption.dispute_id == dispute.id,
                MediationOption.label == label.value,
            )
        )
        option = result.scalar_one_or_none()
        if option is None:
            if not await get_options(db, dispute.id):
                raise InvalidPhaseError(
                    "respond to a mediation option", dispute.phase, "Mediation options are not ready yet"
                )
            raise NotFoundError("Mediation option", label.value)

        # Column-level update so the two parties never overwrite each other's answer
        column = "customer_response" if party == Party.CUSTOMER else "vendor_response"
        await db.execute(
            update(MediationOption)
            .where(MediationOption.id == option.id)
            .values({column: response.value, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        option = (
            await db.execute(
                select(MediationOption)
                .where(MediationOption.id == option.id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        logger.info(
            "Dispute %s: %s %s option %s", dispute.id, party.value, response.value, option.label
        )

        if option.accepted_by_both:
            await transition(
                db,
                dispute,
                DisputePhase.AI_MEDIATION,
                DisputePhase.RESOLVED,
                action="option_accepted",
                now=now,
                actor=party.value,
                label=option.label,
            )
            intent = await self.executor.apply_split(
                db,
                dispute,
                option.customer_amount,
                option.vendor_amount,
                ResolutionSource.MEDIATION,
                f"Both parties accepted mediation option {option.label}: {option.title}",
            )
            effects.settle(intent.id)
            effects.notify(
                dispute.id,
                NotificationType.DISPUTE_RESOLVED.value,
                source=ResolutionSource.MEDIATION.value,
                label=option.label,
                customer_amount=str(option.customer_amount),
                vendor_amount=str(option.vendor_amount),
            )
        return option

"""Phase 1: counter-offers exchanged directly between customer and vendor."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import DisputePhase, NotificationType, Party, ResolutionSource
from escrowguard.common.exceptions import (
    InvalidPhaseError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from escrowguard.common.logging import get_logger
from escrowguard.common.money import to_money
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.service import load_for_party
from escrowguard.core.disputes.state_machine import require_phase, transition
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.models.dispute import DisputeCase, NegotiationOffer
from escrowguard.db.models.escrow import EscrowTransaction

logger = get_logger("disputes.negotiation")


def validate_split(escrow: EscrowTransaction, customer_amount, vendor_amount) -> tuple[Decimal, Decimal]:
    """Both shares non-negative and together exactly the escrowed total."""
    try:
        customer = to_money(customer_amount)
        vendor = to_money(vendor_amount)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if customer < 0 or vendor < 0:
        raise ValidationError("Split amounts must not be negative")
    total = to_money(escrow.original_amount)
    if customer + vendor != total:
        raise ValidationError(f"Split must add up to the escrowed amount of {total}")
    return customer, vendor


def _require_open_window(dispute: DisputeCase, action: str, now: datetime) -> None:
    require_phase(dispute, DisputePhase.IN_NEGOTIATION, action)
    deadline = ensure_utc(dispute.phase_deadline)
    if deadline is not None and now >= deadline:
        raise InvalidPhaseError(action, dispute.phase, "The negotiation window has closed")


class NegotiationExchange:
    def __init__(self, executor: ResolutionExecutor | None = None) -> None:
        self.executor = executor or ResolutionExecutor()

    async def _get_offer(self, db: AsyncSession, dispute: DisputeCase, offer_id: uuid.UUID) -> NegotiationOffer:
        result = await db.execute(
            select(NegotiationOffer).where(
                NegotiationOffer.id == offer_id,
                NegotiationOffer.dispute_id == dispute.id,
                NegotiationOffer.is_deleted.is_(False),
            )
        )
        offer = result.scalar_one_or_none()
        if not offer:
            raise NotFoundError("Offer", str(offer_id))
        return offer

    async def propose_offer(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        user,
        customer_amount,
        vendor_amount,
        effects: SideEffects,
        message: str | None = None,
        now: datetime | None = None,
    ) -> NegotiationOffer:
        now = now or utcnow()
        dispute, party = await load_for_party(db, dispute_id, user)
        _require_open_window(dispute, "propose an offer", now)

        escrow = await self.executor.ledger.get(db, dispute.escrow_id)
        customer, vendor = validate_split(escrow, customer_amount, vendor_amount)

        offer = NegotiationOffer(
            dispute_id=dispute.id,
            proposed_by=party.value,
            customer_amount=customer,
            vendor_amount=vendor,
            message=message,
        )
        db.add(offer)
        await db.flush()

        effects.notify(
            dispute.id,
            NotificationType.OFFER_PROPOSED.value,
            proposed_by=party.value,
            customer_amount=str(customer),
            vendor_amount=str(vendor),
        )
        logger.info(
            "Offer %s on dispute %s by %s: customer %s / vendor %s",
            offer.id,
            dispute.id,
            party.value,
            customer,
            vendor,
        )
        return offer

    async def accept_offer(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        offer_id: uuid.UUID,
        user,
        effects: SideEffects,
        now: datetime | None = None,
    ) -> DisputeCase:
        """Accept any outstanding offer from the other party; resolves the dispute."""
        now = now or utcnow()
        dispute, party = await load_for_party(db, dispute_id, user)
        _require_open_window(dispute, "accept an offer", now)

        offer = await self._get_offer(db, dispute, offer_id)
        if offer.proposed_by == party.value:
            raise PermissionDeniedError("You cannot accept your own offer")
        if not offer.is_outstanding:
            raise ValidationError("This offer is no longer open")

        escrow = await self.executor.ledger.get(db, dispute.escrow_id)
        customer, vendor = validate_split(escrow, offer.customer_amount, offer.vendor_amount)

        await transition(
            db,
            dispute,
            DisputePhase.IN_NEGOTIATION,
            DisputePhase.RESOLVED,
            action="offer_accepted",
            now=now,
            actor=party.value,
            offer_id=str(offer.id),
        )

        offer.accepted = True
        offer.accepted_at = now
        intent = await self.executor.apply_split(
            db,
            dispute,
            customer,
            vendor,
            ResolutionSource.NEGOTIATION,
            f"{Party(offer.proposed_by).value.capitalize()} offer accepted by {party.value}",
        )

        effects.settle(intent.id)
        effects.notify(
            dispute.id,
            NotificationType.DISPUTE_RESOLVED.value,
            source=ResolutionSource.NEGOTIATION.value,
            customer_amount=str(customer),
            vendor_amount=str(vendor),
        )
        return dispute

    async def withdraw_offer(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        offer_id: uuid.UUID,
        user,
        now: datetime | None = None,
    ) -> NegotiationOffer:
        now = now or utcnow()
        dispute, party = await load_for_party(db, dispute_id, user)
        _require_open_window(dispute, "withdraw an offer", now)

        offer = await self._get_offer(db, dispute, offer_id)
        if offer.proposed_by != party.value:
            raise PermissionDeniedError("Only the proposer can withdraw an offer")
        if not offer.is_outstanding:
            raise ValidationError("This offer is no longer open")

        offer.withdrawn = True
        await db.flush()
        logger.info("Offer %s on dispute %s withdrawn by %s", offer.id, dispute.id, party.value)
        return offer

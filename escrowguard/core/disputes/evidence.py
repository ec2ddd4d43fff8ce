"""Evidence bundles handed to the mediation provider."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.db.models.booking import Booking
from escrowguard.db.models.dispute import DisputeAnalysis, DisputeCase, MediationOption, NegotiationOffer
from escrowguard.db.models.escrow import EscrowTransaction


def _offer_entry(offer: NegotiationOffer) -> dict[str, Any]:
    return {
        "proposed_by": offer.proposed_by,
        "customer_amount": str(offer.customer_amount),
        "vendor_amount": str(offer.vendor_amount),
        "message": offer.message,
        "withdrawn": offer.withdrawn,
        "created_at": offer.created_at.isoformat() if offer.created_at else None,
    }


async def get_latest_analysis(db: AsyncSession, dispute_id) -> DisputeAnalysis | None:
    result = await db.execute(
        select(DisputeAnalysis)
        .where(DisputeAnalysis.dispute_id == dispute_id, DisputeAnalysis.is_deleted.is_(False))
        .order_by(DisputeAnalysis.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def analysis_entry(analysis: DisputeAnalysis) -> dict[str, Any]:
    return {
        "evidence_analysis": analysis.evidence_analysis,
        "description_analysis": analysis.description_analysis,
        "behavior_analysis": analysis.behavior_analysis,
        "overall_assessment": analysis.overall_assessment,
    }

async def build_evidence(
    db: AsyncSession, dispute: DisputeCase, include_mediation: bool = False
) -> dict[str, Any]:
    booking = await db.get(Booking, dispute.booking_id)
    escrow = await db.get(EscrowTransaction, dispute.escrow_id)

    offers = (
        await db.execute(
            select(NegotiationOffer)
            .where(NegotiationOffer.dispute_id == dispute.id)
            .order_by(NegotiationOffer.created_at)
        )
    ).scalars().all()

    evidence: dict[str, Any] = {
        "dispute_id": str(dispute.id),
        "opened_by": dispute.opened_by,
        "reason": dispute.reason,
        "description": dispute.description,
        "evidence": dispute.evidence or [],
        "escrow": {
            "amount": str(escrow.original_amount) if escrow else None,
            "currency": escrow.currency if escrow else None,
        },
        "booking": {
            "title": booking.title if booking else None,
            "status": booking.status if booking else None,
            "scheduled_for": booking.scheduled_for.isoformat() if booking and booking.scheduled_for else None,
        },
        "negotiation": [_offer_entry(o) for o in offers],
    }

    analysis = await get_latest_analysis(db, dispute.id)
    if analysis is not None:
        evidence["analysis"] = analysis_entry(analysis)

    if include_mediation:
        options = (
            await db.execute(
                select(MediationOption)
                .where(MediationOption.dispute_id == dispute.id)
                .order_by(MediationOption.label)
            )
        ).scalars().all()
        evidence["mediation"] = [
            {
                "label": o.label,
                "title": o.title,
                "customer_percent": float(o.customer_percent),
                "vendor_percent": float(o.vendor_percent),
                "customer_response": o.customer_response,
                "vendor_response": o.vendor_response,
            }
            for o in options
        ]
        evidence["history"] = dispute.history or []

    return evidence

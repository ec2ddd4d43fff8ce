from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.api.deps import get_db, get_fee_assessor
from escrowguard.common.enums import FeeChargeStatus, NotificationType
from escrowguard.common.exceptions import BadRequestError
from escrowguard.common.logging import get_logger
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.integrations.stripe_client import StripeClient

logger = get_logger("api.v1.webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

HANDLED_EVENTS = {"payment_intent.succeeded", "payment_intent.payment_failed"}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    fees: FeeAssessor = Depends(get_fee_assessor),
):
    """Processor callback confirming the outcome of dispute fee charges."""
    payload = await request.body()
    sig = request.headers.get("stripe-signature", "")

    try:
        event = StripeClient().verify_webhook_signature(payload, sig)
    except (ValueError, KeyError):
        raise BadRequestError("Invalid webhook signature")

    event_type = event.get("type", "")
    if event_type not in HANDLED_EVENTS:
        return {"status": "ignored", "type": event_type}

    charge = await fees.apply_processor_event(db, event)
    if charge is None:
        return {"status": "ignored", "type": event_type}

    effects = SideEffects()
    if event_type == "payment_intent.succeeded" and charge.status == FeeChargeStatus.CHARGED.value:
        effects.notify(
            charge.dispute_id,
            NotificationType.FEE_CHARGED.value,
            amount=str(charge.amount),
            currency=charge.currency.upper(),
        )
    await db.commit()
    effects.dispatch()

    logger.info("Webhook %s applied to fee charge %s (%s)", event_type, charge.id, charge.status)
    return {"status": "received", "fee_charge_id": str(charge.id), "fee_status": charge.status}

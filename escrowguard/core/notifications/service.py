"""Notification service for dispute events.

Delivery is best effort: in-app rows, e-mail and the dispute's live channel.
Callers run this from a background task, never inside a state transition.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.enums import NotificationType
from escrowguard.common.events import emit
from escrowguard.common.logging import get_logger
from escrowguard.config import settings
from escrowguard.db.models.dispute import DisputeCase
from escrowguard.db.models.notification import Notification
from escrowguard.db.models.user import User
from escrowguard.integrations.sendgrid import EmailClient

logger = get_logger("notifications.service")

MESSAGES: dict[str, tuple[str, str]] = {
    NotificationType.DISPUTE_OPENED.value: (
        "A dispute was opened",
        "The {opened_by} opened a dispute. You have 48 hours to agree on a split directly.",
    ),
    NotificationType.PHASE_CHANGED.value: (
        "Dispute moved to {phase}",
        "The dispute is now in the '{phase}' phase.",
    ),
    NotificationType.OFFER_PROPOSED.value: (
        "New settlement offer",
        "The {proposed_by} proposed {customer_amount} to the customer and {vendor_amount} to the vendor.",
    ),
    NotificationType.OPTIONS_READY.value: (
        "Mediation options are ready",
        "Three resolution options are available. If you both accept the same one, the dispute is settled.",
    ),
    NotificationType.DECISION_ISSUED.value: (
        "Binding decision issued",
        "The decision awards {customer_amount} to the customer and {vendor_amount} to the vendor. "
        "Accept or reject it before {accept_deadline}.",
    ),
    NotificationType.DEADLINE_APPROACHING.value: (
        "Dispute deadline approaching",
        "The '{phase}' phase ends at {deadline}.",
    ),
    NotificationType.DISPUTE_RESOLVED.value: (
        "Dispute resolved",
        "The dispute was resolved: {customer_amount} to the customer and {vendor_amount} to the vendor.",
    ),
    NotificationType.DISPUTE_ESCALATED.value: (
        "Dispute escalated",
        "The dispute left the platform process and will be resolved externally.",
    ),
    NotificationType.FEE_CHARGED.value: (
        "Dispute fee charged",
        "A dispute handling fee of {amount} {currency} was charged.",
    ),
}


def render(category: str, context: dict[str, Any]) -> tuple[str, str]:
    title, body = MESSAGES.get(category, ("Dispute update", "Your dispute was updated."))
    try:
        return title.format(**context), body.format(**context)
    except (KeyError, IndexError):
        return title.split("{")[0].strip() or "Dispute update", "Your dispute was updated."


async def create_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    category: str,
    title: str,
    body: str,
    dispute_id: uuid.UUID | None = None,
    channel: str = "in_app",
    metadata: dict[str, Any] | None = None,
    email_address: str | None = None,
) -> Notification:
    """Create an in-app notification and optionally e-mail it."""
    notification = Notification(
        user_id=user_id,
        dispute_id=dispute_id,
        channel=channel,
        category=category,
        title=title,
        body=body,
        metadata_=metadata or {},
    )
    db.add(notification)
    await db.flush()

    logger.info("Created notification: category=%s user=%s title='%s'", category, user_id, title)

    if email_address:
        link = f"{settings.APP_URL}/disputes/{dispute_id}" if dispute_id else settings.APP_URL
        html_body = (
            f"<h3>{title}</h3>"
            f"<p>{body}</p>"
            f'<p><a href="{link}">View the dispute</a></p>'
        )
        result = await EmailClient().send_email(to=email_address, subject=f"EscrowGuard: {title}", html_body=html_body)
        if result.get("status") != "sent":
            logger.warning("E-mail for notification %s not delivered: %s", notification.id, result.get("error"))

    return notification


async def notify_dispute_parties(
    db: AsyncSession, dispute_id: uuid.UUID, category: str, context: dict[str, Any] | None = None
) -> list[Notification]:
    context = context or {}
    dispute = await db.get(DisputeCase, dispute_id)
    if not dispute:
        logger.warning("Notification for unknown dispute %s dropped", dispute_id)
        return []

    title, body = render(category, context)
    created = []
    for user_id in (dispute.customer_id, dispute.vendor_id):
        user = await db.get(User, user_id)
        if not user or not user.is_active:
            continue
        created.append(
            await create_notification(
                db,
                user.id,
                category,
                title,
                body,
                dispute_id=dispute.id,
                metadata={**context, "phase": dispute.phase},
                email_address=user.email,
            )
        )

    await emit(str(dispute.id), category, {"phase": dispute.phase, "title": title, **context})
    return created

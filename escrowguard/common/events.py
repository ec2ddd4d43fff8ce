"""Event bus for broadcasting dispute updates to WebSocket clients."""

from __future__ import annotations

from escrowguard.common.logging import get_logger

logger = get_logger("events")


async def emit(dispute_id: str, event: str, data: dict) -> None:
    """Broadcast an event to every connection watching a dispute.

    Safe to call from anywhere: no-ops when nobody is connected in this process.
    """
    try:
        from escrowguard.api.ws import manager

        await manager.broadcast(dispute_id, event, data)
    except Exception as e:
        logger.debug("Event emit failed (non-critical): %s", e)

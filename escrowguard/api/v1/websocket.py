"""WebSocket endpoint for live dispute updates.

Parties connect to /api/v1/ws/disputes/{dispute_id}?token=<jwt>
and receive events such as:
  - dispute_opened / phase_changed
  - offer_proposed
  - options_ready / decision_issued
  - deadline_approaching
  - dispute_resolved / dispute_escalated
"""

from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import select

from escrowguard.api.ws import manager
from escrowguard.common.enums import UserRole
from escrowguard.common.logging import get_logger
from escrowguard.common.security import decode_token
from escrowguard.db.models.dispute import DisputeCase
from escrowguard.db.models.user import User
from escrowguard.db.session import async_session_factory

logger = get_logger("api.v1.websocket")

router = APIRouter(tags=["WebSocket"])


async def _authenticate_ws(token: str) -> User | None:
    try:
        payload = decode_token(token)
    except ValueError:
        return None
    if payload.get("type") != "access":
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    async with async_session_factory() as db:
        result = await db.execute(
            select(User).where(User.id == uuid.UUID(user_id), User.is_deleted.is_(False))
        )
        return result.scalar_one_or_none()


async def _dispute_snapshot(user: User, dispute_id: str) -> dict | None:
    """Current phase for a viewer allowed to watch the dispute, else None."""
    try:
        key = uuid.UUID(dispute_id)
    except ValueError:
        return None
    async with async_session_factory() as db:
        dispute = (
            await db.execute(
                select(DisputeCase).where(DisputeCase.id == key, DisputeCase.is_deleted.is_(False))
            )
        ).scalar_one_or_none()
    if not dispute:
        return None
    if user.role != UserRole.ADMIN.value and dispute.party_for(user.id) is None:
        return None
    return {
        "phase": dispute.phase,
        "phase_deadline": dispute.phase_deadline.isoformat() if dispute.phase_deadline else None,
        "version": dispute.version,
    }


@router.websocket("/ws/disputes/{dispute_id}")
async def dispute_websocket(
    websocket: WebSocket,
    dispute_id: str,
    token: str = Query(...),
):
    user = await _authenticate_ws(token)
    if not user:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    snapshot = await _dispute_snapshot(user, dispute_id)
    if snapshot is None:
        await websocket.close(code=4003, reason="Access denied")
        return

    conn_id = await manager.connect(dispute_id, websocket)
    await manager.send_personal(dispute_id, conn_id, "connected", {
        "user_id": str(user.id),
        **snapshot,
    })

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_personal(dispute_id, conn_id, "error", {"message": "Invalid JSON"})
                continue

            if msg.get("action") == "ping":
                await manager.send_personal(dispute_id, conn_id, "pong", {})
            else:
                await manager.send_personal(dispute_id, conn_id, "error", {
                    "message": f"Unknown action: {msg.get('action')}"
                })

    except WebSocketDisconnect:
        manager.disconnect(dispute_id, conn_id)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        manager.disconnect(dispute_id, conn_id)

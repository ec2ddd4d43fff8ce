"""WebSocket connection registry for live dispute updates."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from escrowguard.common.logging import get_logger

logger = get_logger("ws.manager")


def _frame(dispute_id: str, event: str, data: dict) -> str:
    return json.dumps(
        {
            "event": event,
            "data": data,
            "dispute_id": dispute_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class ConnectionManager:
    """Connections grouped by dispute id; each party may have several tabs open."""

    def __init__(self):
        self._connections: dict[str, dict[str, WebSocket]] = {}

    async def connect(self, dispute_id: str, websocket: WebSocket) -> str:
        await websocket.accept()
        conn_id = uuid.uuid4().hex[:12]
        self._connections.setdefault(dispute_id, {})[conn_id] = websocket
        logger.info(
            "WS connected: dispute=%s conn=%s (%d total)",
            dispute_id,
            conn_id,
            len(self._connections[dispute_id]),
        )
        return conn_id

    def disconnect(self, dispute_id: str, conn_id: str):
        if dispute_id in self._connections:
            self._connections[dispute_id].pop(conn_id, None)
            if not self._connections[dispute_id]:
                del self._connections[dispute_id]
        logger.info("WS disconnected: dispute=%s conn=%s", dispute_id, conn_id)

    async def broadcast(self, dispute_id: str, event: str, data: dict):
        if dispute_id not in self._connections:
            return
        message = _frame(dispute_id, event, data)
        dead = []
        for conn_id, ws in self._connections[dispute_id].items():
            try:
                if ws.client_state == WebSocketState.CONNECTED:
                    await ws.send_text(message)
            except Exception:
                dead.append(conn_id)
        for conn_id in dead:
            self.disconnect(dispute_id, conn_id)

    async def send_personal(self, dispute_id: str, conn_id: str, event: str, data: dict):
        ws = self._connections.get(dispute_id, {}).get(conn_id)
        if ws is None:
            return
        try:
            if ws.client_state == WebSocketState.CONNECTED:
                await ws.send_text(_frame(dispute_id, event, data))
        except Exception:
            self.disconnect(dispute_id, conn_id)

    @property
    def active_connections(self) -> int:
        return sum(len(conns) for conns in self._connections.values())


manager = ConnectionManager()

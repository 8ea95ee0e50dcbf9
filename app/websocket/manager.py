from fastapi import WebSocket
from typing import Any, Dict, List, Optional
import json
import logging

from app.database import utcnow

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections for live pipeline events (dashboards)."""

    def __init__(self):
        # Map of company_id -> connected websockets ("*" receives every company)
        self.company_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, company_id: str = "*"):
        await websocket.accept()
        self.company_connections.setdefault(company_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, company_id: str = "*"):
        if company_id in self.company_connections:
            self.company_connections[company_id] = [
                ws for ws in self.company_connections[company_id] if ws != websocket
            ]
            if not self.company_connections[company_id]:
                del self.company_connections[company_id]

    async def _send_all(self, key: str, message: str):
        dead_connections = []
        for ws in self.company_connections.get(key, []):
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug("Dropping websocket on %s: %s", key, e)
                dead_connections.append(ws)
        for ws in dead_connections:
            self.disconnect(ws, key)

    async def broadcast(self, data: dict, company_id: Optional[str] = None):
        """Send to the company's subscribers and to the catch-all channel."""
        message = json.dumps(data, default=str)
        if company_id and company_id != "*":
            await self._send_all(company_id, message)
        await self._send_all("*", message)


ws_manager = ConnectionManager()


async def emit_event(event_type: str, company_id: Optional[str], payload: Dict[str, Any]):
    """Best-effort dashboard notification; never raises into the pipeline."""
    data = {"type": event_type, "company_id": company_id, "timestamp": utcnow().isoformat(), **payload}
    try:
        await ws_manager.broadcast(data, company_id=company_id)
    except Exception:
        logger.exception("Event broadcast failed for %s", event_type)

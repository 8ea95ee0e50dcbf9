from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from app.websocket.manager import ws_manager
import json

router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws/events")
async def pipeline_events_websocket(websocket: WebSocket, company_id: str = Query(default="*")):
    """WebSocket endpoint for live pipeline events.

    Receives task lifecycle notifications, deal status changes, offers
    awaiting approval and sweep results for one company (or all, with
    the default ``*``).
    """
    await ws_manager.connect(websocket, company_id=company_id)
    try:
        while True:
            data = await websocket.receive_text()
            # Client can send "ping" to keep alive
            if data == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket, company_id=company_id)

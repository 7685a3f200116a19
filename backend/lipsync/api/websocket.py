"""WebSocket support for real-time processing and export notifications.

This module provides:
- WebSocketManager: tracks connections per session
- session_events endpoint: forwards a session's events to its clients
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from lipsync.services.event_manager import event_manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


class WebSocketManager:
    """Manages WebSocket connections watching a session.

    Supports multiple clients per session.
    """

    def __init__(self):
        # session_id -> list of connected websockets
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, session_id: str) -> None:
        """Accept and register a WebSocket connection for a session."""
        await websocket.accept()
        self._connections.setdefault(session_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, session_id: str) -> None:
        if session_id in self._connections:
            if websocket in self._connections[session_id]:
                self._connections[session_id].remove(websocket)
            if not self._connections[session_id]:
                del self._connections[session_id]

    def get_connection_count(self, session_id: str) -> int:
        return len(self._connections.get(session_id, []))


websocket_manager = WebSocketManager()


async def _forward_events(websocket: WebSocket, session_id: str) -> None:
    async for event in event_manager.subscribe(session_id):
        await websocket.send_json(event.to_message())


@router.websocket("/ws/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str) -> None:
    """Stream a session's events until the client disconnects."""
    await websocket_manager.connect(websocket, session_id)
    await websocket.send_json({"type": "connected", "session_id": session_id})
    forwarder = asyncio.create_task(_forward_events(websocket, session_id))
    try:
        # Clients may send pings; anything received just keeps the socket alive
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected from session {session_id}")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        websocket_manager.disconnect(websocket, session_id)

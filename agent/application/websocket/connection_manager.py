from typing import Dict, Set, Optional
from datetime import datetime
from fastapi import WebSocket
import asyncio
import structlog

from domain.models.message import utcnow
from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.last_activity: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[client_id] = websocket
            self.last_activity[client_id] = utcnow()

        await self.send_event(client_id, ConnectionEvent(status="connected"))
        logger.info("WebSocket connected", client_id=client_id)

    async def disconnect(self, client_id: str):
        """Forget a connection. The socket is closed by whoever owns it."""
        async with self._lock:
            self.active_connections.pop(client_id, None)
            self.last_activity.pop(client_id, None)

        logger.info("WebSocket disconnected", client_id=client_id)

    async def send_event(self, client_id: str, event: BaseEvent) -> bool:
        """Send an event to one client"""
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected client", client_id=client_id, event_type=event.type.value)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except (RuntimeError, ConnectionError) as e:
            logger.error("Failed to send event", client_id=client_id, error=str(e))
            await self.disconnect(client_id)
            return False

        self.last_activity[client_id] = utcnow()
        return True

    async def send_error(self, client_id: str, message: str, kind: Optional[str] = None, session_id: Optional[str] = None):
        """Send an error event to a client"""
        await self.send_event(client_id, ErrorEvent(message=message, kind=kind, session_id=session_id))

    def get_active_clients(self) -> Set[str]:
        return set(self.active_connections.keys())

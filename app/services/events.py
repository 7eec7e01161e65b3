"""
Real-time Event Fan-out

Broadcasts order and kitchen events to every connected WebSocket client
(kitchen display, dashboard, online-orders board). There is no server-side
filtering: each client picks the events it cares about.

Message format:
    {"event": "new-online-order", "data": {...}, "timestamp": "2024-01-15T18:30:00+00:00"}
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)

NEW_ONLINE_ORDER = "new-online-order"
KITCHEN_UPDATED = "kitchen-updated"
ORDER_STATUS_UPDATED = "order-status-updated"


class ConnectionManager:
    """Tracks connected WebSocket subscribers."""

    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"WebSocket connected ({len(self.active_connections)} subscribers)")

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected ({len(self.active_connections)} subscribers)")

    async def broadcast(self, event: str, data: Any) -> int:
        """
        Send an event to every subscriber.

        Subscribers that fail to receive are dropped. Returns the number of
        subscribers the event was delivered to.
        """
        message = {
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        delivered = 0
        disconnected = set()

        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber after failed send of {event}: {e}")
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

        logger.debug(f"Event {event} delivered to {delivered} subscribers")
        return delivered


manager = ConnectionManager()


def get_event_manager() -> ConnectionManager:
    """Return the process-wide connection manager."""
    return manager

"""
WebSocket change feed.

Clients receive three kinds of event:
- project_updated: the open project has a new snapshot; fetch GET /api/project
- project_closed: no project is open any more
- notification: a user-facing message (info, success, warning, error)

Notifications are queued from synchronous code (the canvas notifier) and
flushed ahead of the snapshot event they came with, so a client shows
"Removed 1 invalid connection(s)" before it refetches the project.
"""
import json
import logging
from collections import deque
from typing import Optional

from fastapi import WebSocket

from ..core.models import Project

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Tracks connected clients and pushes project events to them."""

    def __init__(self):
        self._clients: set[WebSocket] = set()
        self._notifications: deque[tuple[str, str]] = deque()

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._clients.add(websocket)
        logger.info("WebSocket client connected (%d open)", len(self._clients))

    def disconnect(self, websocket: WebSocket):
        self._clients.discard(websocket)
        logger.info("WebSocket client disconnected (%d open)", len(self._clients))

    def queue_notification(self, level: str, message: str) -> None:
        """Hold a user-facing message until the next flush."""
        self._notifications.append((level, message))

    def clear_notifications(self) -> None:
        self._notifications.clear()

    async def send(self, event: str, **payload):
        """Send one event to every client; clients whose send fails are dropped."""
        if not self._clients:
            return

        text = json.dumps({"type": event, **payload})
        for websocket in list(self._clients):
            try:
                await websocket.send_text(text)
            except (RuntimeError, ConnectionError) as exc:
                logger.debug("Dropping WebSocket client after failed send: %s", exc)
                self._clients.discard(websocket)

    async def flush(self, project: Optional[Project]):
        """Send queued notifications, then the event describing `project`."""
        while self._notifications:
            level, message = self._notifications.popleft()
            await self.send("notification", level=level, message=message)

        if project is None:
            await self.send("project_closed")
        else:
            await self.send("project_updated", project_id=project.id)


ws_manager = WebSocketManager()

"""WebSocket event stream for UI clients of the device agent."""

import asyncio
import json
import logging

from fastapi import WebSocket

from config import UI_SEND_TIMEOUT

logger = logging.getLogger(__name__)


def encode_event(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data})


class ConnectionManager:
    """Fans agent events out to UI clients; a client that stops reading is dropped."""

    def __init__(self, snapshot=None, send_timeout: float = UI_SEND_TIMEOUT) -> None:
        """
        Args:
            snapshot: optional fn() -> list[(event, data)] replayed to each
                new client so it starts from the current state.
            send_timeout: seconds a single client may take to accept one event.
        """
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._snapshot = snapshot
        self._send_timeout = send_timeout

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._snapshot:
            for event, data in self._snapshot():
                if not await self._send(websocket, encode_event(event, data)):
                    return
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._connections)}")

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send_text(message), self._send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("UI client too slow, dropping it")
        except Exception as e:
            logger.debug(f"UI client send failed: {e}")
        return False

    async def broadcast(self, event: str, data: dict) -> None:
        """Send an event to every connected UI client at once, dropping dead or stalled ones."""
        message = encode_event(event, data)
        async with self._lock:
            clients = list(self._connections)

        results = await asyncio.gather(*(self._send(ws, message) for ws in clients))

        dead = [ws for ws, ok in zip(clients, results) if not ok]
        if dead:
            async with self._lock:
                self._connections = [ws for ws in self._connections if ws not in dead]

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with TransferManager.on_event()."""
        await self.broadcast(event_type, data)

"""
Relay client.

Keeps one WebSocket open to the signaling relay, reconnecting forever with a
fixed delay. Every (re)connect registers from scratch, so the device gets a
new id each time.
"""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import DEVICE_NAME, PING_INTERVAL, RECONNECT_DELAY, RELAY_URL, USER_AGENT
from relay.models import MessageType

logger = logging.getLogger(__name__)


class SignalingClient:
    """Connection to the relay with automatic reconnect."""

    def __init__(
        self,
        url: str = RELAY_URL,
        device_name: str = DEVICE_NAME,
        user_agent: str = USER_AGENT,
        reconnect_delay: float = RECONNECT_DELAY,
        ping_interval: float = PING_INTERVAL,
    ) -> None:
        self.url = url
        self.device_name = device_name
        self.user_agent = user_agent
        self.device_id: str | None = None
        self._reconnect_delay = reconnect_delay
        self._ping_interval = ping_interval
        self._ws = None
        self._task: asyncio.Task | None = None
        self._message_callbacks: list = []  # async fn(message: dict)
        self._connection_callbacks: list = []  # async fn(connected: bool)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on_message(self, callback) -> None:
        self._message_callbacks.append(callback)

    def on_connection_change(self, callback) -> None:
        self._connection_callbacks.append(callback)

    async def start(self) -> None:
        logger.info(f"Connecting to relay at {self.url}")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Relay client stopped")

    async def send(self, message: dict) -> bool:
        """Send a message to the relay; returns False while disconnected."""
        ws = self._ws
        if ws is None:
            logger.debug(f"Not connected, dropping outgoing {message.get('type')}")
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except ConnectionClosed:
            logger.debug(f"Connection closed while sending {message.get('type')}")
            return False

    async def register(self, name: str | None = None) -> None:
        if name is not None:
            self.device_name = name
        await self.send({"type": MessageType.REGISTER, "name": self.device_name})

    async def _run(self) -> None:
        while True:
            try:
                async with websockets.connect(self.url, user_agent_header=self.user_agent) as ws:
                    self._ws = ws
                    logger.info("Relay connected")
                    await self._notify_connection(True)
                    await self.register()
                    keepalive = asyncio.create_task(self._keepalive())
                    try:
                        async for raw in ws:
                            await self._dispatch(raw)
                    finally:
                        keepalive.cancel()
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"Relay connection error: {e}")
            finally:
                if self._ws is not None:
                    self._ws = None
                    self.device_id = None
                    logger.info("Relay disconnected")
                    await self._notify_connection(False)

            await asyncio.sleep(self._reconnect_delay)

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            await self.send({"type": MessageType.PING})

    async def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring invalid relay message: {e}")
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring relay message that is not an object")
            return

        if message.get("type") == MessageType.REGISTERED:
            self.device_id = message.get("id")
            logger.info(f"Device registered: {self.device_id}")

        for cb in self._message_callbacks:
            try:
                await cb(message)
            except Exception as e:
                logger.error(f"Relay message handler error: {e}", exc_info=True)

    async def _notify_connection(self, connected: bool) -> None:
        for cb in self._connection_callbacks:
            try:
                await cb(connected)
            except Exception as e:
                logger.error(f"Connection callback error: {e}")

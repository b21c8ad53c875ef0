"""
Signaling relay.

Accepts device WebSocket connections, keeps the device registry up to date
and forwards offer/answer/candidate/consent messages between two devices.
The relay never looks inside the negotiation payloads.
"""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from errors import MalformedMessageError
from relay.models import (
    RESPONSE_TYPES,
    SIGNALING_TYPES,
    InboundMessage,
    MessageType,
    SignalingEnvelope,
)
from relay.registry import DeviceRegistry, detect_platform

logger = logging.getLogger(__name__)


class ClientConnection:
    """One device's WebSocket, as seen by the registry."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.user_agent = websocket.headers.get("user-agent", "")

    @property
    def writable(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, message: dict) -> None:
        await self.websocket.send_text(json.dumps(message))


def parse_message(raw: str) -> InboundMessage:
    """Decode one client frame, raising MalformedMessageError on bad input."""
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise MalformedMessageError("message is not a JSON object")
        return InboundMessage.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as e:
        raise MalformedMessageError(str(e)) from e


class Relay:
    """Owns the device registry and serves relay connections."""

    def __init__(self, registry: DeviceRegistry | None = None) -> None:
        self.registry = registry or DeviceRegistry()

    async def serve(self, websocket: WebSocket) -> None:
        """Run one device connection until it closes."""
        await websocket.accept()
        connection = ClientConnection(websocket)
        logger.info(f"Connection opened from {websocket.client}")

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    logger.warning("Dropping binary frame on relay connection")
                    continue
                await self.handle_message(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Relay connection error: {e}", exc_info=True)
        finally:
            await self.disconnect(connection)

    async def handle_message(self, connection: ClientConnection, raw: str) -> None:
        """Process a single inbound frame; malformed frames are dropped."""
        try:
            message = parse_message(raw)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        if message.type == MessageType.PING:
            await connection.send({"type": MessageType.PONG})
        elif message.type == MessageType.REGISTER:
            await self.register(connection, message.name)
        elif message.type in SIGNALING_TYPES or message.type in RESPONSE_TYPES:
            if not message.target:
                logger.warning(f"Dropping {message.type} without a target")
                return
            await self.registry.route(connection, SignalingEnvelope.from_inbound(message))
        else:
            logger.debug(f"Ignoring unknown message type: {message.type}")

    async def register(self, connection: ClientConnection, name: str | None) -> str:
        device_id = await self.registry.register(
            connection, name, detect_platform(connection.user_agent)
        )
        await connection.send({"type": MessageType.REGISTERED, "id": device_id})
        await self.registry.broadcast_presence()
        return device_id

    async def disconnect(self, connection: ClientConnection) -> None:
        device_id = await self.registry.deregister(connection)
        if device_id is not None:
            await self.registry.broadcast_presence()

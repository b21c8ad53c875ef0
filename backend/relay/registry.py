"""
Device registry — the relay's map of live connections to device identities.

One asyncio lock guards the maps; it is never held across a network write.
Writes to a device are serialized by that device's own send lock and bounded
by a timeout, so a device that stops reading only delays its own traffic.
A device removed before its turn to be written to never receives the message.
"""

import asyncio
import logging
import uuid

from config import RELAY_SEND_TIMEOUT, UNKNOWN_DEVICE_NAME
from relay.models import DeviceIdentity, Platform, PresenceEntry, SignalingEnvelope

logger = logging.getLogger(__name__)

# Checked in order: "mac" would otherwise match iPhone/iPad user agents.
_PLATFORM_MARKERS = [
    ("iphone", Platform.IPHONE),
    ("ipad", Platform.IPAD),
    ("mac", Platform.MAC),
    ("windows", Platform.WINDOWS),
    ("android", Platform.ANDROID),
    ("linux", Platform.LINUX),
]


def detect_platform(user_agent: str | None) -> Platform:
    """Map a User-Agent header to a device icon."""
    ua = (user_agent or "").lower()
    for marker, platform in _PLATFORM_MARKERS:
        if marker in ua:
            return platform
    return Platform.UNKNOWN


class DeviceRegistry:
    """Tracks registered devices, keyed by their transport connection."""

    def __init__(self, send_timeout: float = RELAY_SEND_TIMEOUT) -> None:
        self._devices: dict[object, DeviceIdentity] = {}
        self._by_id: dict[str, DeviceIdentity] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._send_timeout = send_timeout
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._by_id

    def device_id_for(self, connection) -> str | None:
        device = self._devices.get(connection)
        return device.id if device else None

    async def register(self, connection, claimed_name: str | None, platform_hint: Platform) -> str:
        """Register (or rename) the device behind ``connection`` and return its id."""
        name = (claimed_name or "").strip() or UNKNOWN_DEVICE_NAME
        async with self._lock:
            existing = self._devices.get(connection)
            if existing:
                existing.name = name
                logger.info(f"Device renamed: {existing.id} -> {name}")
                return existing.id

            device_id = str(uuid.uuid4())
            while device_id in self._by_id:
                device_id = str(uuid.uuid4())

            device = DeviceIdentity(
                id=device_id,
                name=name,
                icon=platform_hint,
                connection=connection,
            )
            self._devices[connection] = device
            self._by_id[device_id] = device

        logger.info(f"Device registered: {name} ({device_id}, {platform_hint.value})")
        return device_id

    async def deregister(self, connection) -> str | None:
        """Forget the device behind ``connection``. Returns its id, if any."""
        async with self._lock:
            device = self._devices.pop(connection, None)
            if device is None:
                return None
            self._by_id.pop(device.id, None)
            self._send_locks.pop(device.id, None)

        logger.info(f"Device deregistered: {device.name} ({device.id})")
        return device.id

    def snapshot(self, excluding: str | None = None) -> list[PresenceEntry]:
        """All live devices in registration order, minus ``excluding``."""
        return [
            device.presence()
            for device in self._devices.values()
            if device.id != excluding
        ]

    async def route(self, connection, envelope: SignalingEnvelope) -> bool:
        """
        Forward ``envelope`` to its target device.

        The sender is always overwritten with the id registered for
        ``connection``. Unknown or unwritable targets are dropped; the
        return value only reports whether the envelope was delivered.
        """
        async with self._lock:
            sender = self._devices.get(connection)
            if sender is None:
                logger.debug(f"Dropping {envelope.type} from unregistered connection")
                return False

            target = self._by_id.get(envelope.target)
            if target is None or not target.connection.writable:
                logger.debug(
                    f"Dropping {envelope.type} from {sender.id}: "
                    f"target {envelope.target} unreachable"
                )
                return False

            envelope.sender = sender.id
            message = envelope.to_wire()

        return await self._deliver(target, message)

    async def broadcast_presence(self) -> None:
        """Send every device the device list, excluding itself."""
        async with self._lock:
            outgoing = [
                (device, {
                    "type": "devices",
                    "devices": [entry.model_dump(mode="json") for entry in self.snapshot(excluding=device.id)],
                })
                for device in self._devices.values()
                if device.connection.writable
            ]

        await asyncio.gather(*(self._deliver(device, message) for device, message in outgoing))

    def _is_live(self, device: DeviceIdentity) -> bool:
        return self._by_id.get(device.id) is device

    async def _deliver(self, device: DeviceIdentity, message: dict) -> bool:
        """Write one message to one device, in order with its other messages."""
        if not self._is_live(device):
            return False
        lock = self._send_locks.setdefault(device.id, asyncio.Lock())
        async with lock:
            # It may have deregistered while this message waited its turn.
            if not self._is_live(device) or not device.connection.writable:
                logger.debug(f"Dropping {message['type']} for departed device {device.id}")
                return False
            try:
                await asyncio.wait_for(device.connection.send(message), self._send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out sending {message['type']} to {device.id}")
                return False
            except Exception as e:
                logger.warning(f"Failed to send {message['type']} to {device.id}: {e}")
                return False
        return True

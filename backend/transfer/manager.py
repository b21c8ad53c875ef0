"""
Transfer Manager — the device agent's controller.

Tracks the presence list and the selected device, runs at most one transfer
session at a time, routes relay messages into it, and turns everything into
events for the UI.
"""

import logging
from enum import Enum

from pydantic import ValidationError

from errors import (
    DeviceNotFoundError,
    NegotiationError,
    NoDeviceSelectedError,
    NoSessionError,
    SessionBusyError,
)
from peer.rtc import RTCPeerLink
from relay.models import MessageType, PresenceEntry
from signaling.negotiation import Role
from transfer.models import (
    FileTransferPlan,
    OfferSummary,
    ReceivedFile,
    TransferDirection,
    TransferInfo,
    TransferState,
)
from transfer.session import TransferSession
from transfer.storage import DirectorySink

logger = logging.getLogger(__name__)


class UIState(str, Enum):
    NO_DEVICES = "no_devices"
    SELECTING = "selecting"
    READY = "ready"
    AWAITING_CONSENT = "awaiting_consent"
    TRANSFERRING = "transferring"


class TransferManager:
    """Device selection plus the lifecycle of the current transfer session."""

    def __init__(self, signaling, sink: DirectorySink, link_factory=RTCPeerLink, session_options: dict | None = None) -> None:
        self._signaling = signaling
        self._sink = sink
        self._link_factory = link_factory
        self._session_options = session_options or {}
        self._event_callbacks: list = []  # async fn(event_type, data)

        self.devices: list[PresenceEntry] = []
        self.selected_device: PresenceEntry | None = None
        self.auto_selected = False
        self.ui_state = UIState.NO_DEVICES
        self.session: TransferSession | None = None

        signaling.on_message(self.handle_relay_message)
        signaling.on_connection_change(self._on_relay_connection)

    @property
    def device_id(self) -> str | None:
        return self._signaling.device_id

    @property
    def device_name(self) -> str:
        return self._signaling.device_name

    @property
    def save_dir(self) -> str:
        return self._sink.save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        self._sink.save_dir = path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _notify(self, kind: str, message: str) -> None:
        await self._emit("notification", {"type": kind, "message": message})

    # --- Relay messages ---

    async def handle_relay_message(self, message: dict) -> None:
        kind = message.get("type")
        sender = message.get("from")

        if kind == MessageType.REGISTERED:
            await self._emit("registered", {"id": message.get("id"), "name": self.device_name})
        elif kind == MessageType.DEVICES:
            await self.update_devices(self._parse_devices(message.get("devices")))
        elif kind == MessageType.OFFER:
            await self._handle_offer(message)
        elif kind in (
            MessageType.ANSWER,
            MessageType.ICE_CANDIDATE,
            MessageType.TRANSFER_ACCEPT,
            MessageType.TRANSFER_REJECT,
        ):
            session = self.session
            if session is None or sender != session.peer_device_id:
                logger.debug(f"Ignoring {kind} from {sender}: no matching session")
                return
            if kind == MessageType.ANSWER:
                await session.handle_answer(message.get("data"))
            elif kind == MessageType.ICE_CANDIDATE:
                await session.handle_candidate(message.get("data"))
            elif kind == MessageType.TRANSFER_ACCEPT:
                await session.handle_remote_accept()
            else:
                await session.handle_remote_reject()
        elif kind == MessageType.PONG:
            pass
        else:
            logger.debug(f"Ignoring relay message type: {kind}")

    @staticmethod
    def _parse_devices(raw) -> list[PresenceEntry]:
        devices = []
        for entry in raw or []:
            try:
                devices.append(PresenceEntry.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Ignoring invalid device entry: {e}")
        return devices

    async def _handle_offer(self, message: dict) -> None:
        sender = message.get("from")
        device = self._find_device(sender)
        if device is None:
            logger.error(f"Offer from unknown device: {sender}")
            return
        if self.session is not None:
            logger.info(f"Busy, declining offer from {device.name}")
            await self._signaling.send({"type": MessageType.TRANSFER_REJECT, "target": sender})
            return

        try:
            summary = OfferSummary.model_validate(message)
        except ValidationError as e:
            logger.warning(f"Ignoring offer with invalid file summary: {e}")
            return

        logger.info(f"Offer from {device.name}: {summary.file_count} file(s), {summary.file_size} bytes")
        session = self._new_session(Role.RESPONDER, device)
        session.receive_offer(message.get("data"), summary)
        self.session = session
        self.selected_device = device
        self.auto_selected = False
        await self._set_ui_state(UIState.AWAITING_CONSENT)
        await self._emit("transfer_request", session.info.model_dump())

    # --- Presence & selection ---

    def _find_device(self, device_id: str | None) -> PresenceEntry | None:
        return next((d for d in self.devices if d.id == device_id), None)

    async def update_devices(self, devices: list[PresenceEntry]) -> None:
        """Apply a new presence list, auto-selecting a lone device."""
        self.devices = [d for d in devices if d.id != self.device_id]

        if self.selected_device and self._find_device(self.selected_device.id) is None:
            self.selected_device = None
            self.auto_selected = False

        if len(self.devices) == 1 and self.selected_device is None:
            self.selected_device = self.devices[0]
            self.auto_selected = True
            logger.info(f"Auto-selected single device: {self.selected_device.name}")
            await self._notify("info", f"Ready to send files to {self.selected_device.name}")
        elif len(self.devices) > 1 and self.auto_selected:
            self.selected_device = None
            self.auto_selected = False

        await self._emit("devices", self.devices_payload())
        if self.session is None:
            await self._set_ui_state(self._idle_state())

    def _idle_state(self) -> UIState:
        if not self.devices:
            return UIState.NO_DEVICES
        if self.selected_device is not None:
            return UIState.READY
        return UIState.SELECTING

    def devices_payload(self) -> dict:
        return {
            "devices": [d.model_dump(mode="json") for d in self.devices],
            "selected": self.selected_device.id if self.selected_device else None,
        }

    async def select_device(self, device_id: str) -> PresenceEntry:
        device = self._find_device(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        self.selected_device = device
        self.auto_selected = False
        logger.info(f"Selected device: {device.name}")
        if self.session is None:
            await self._set_ui_state(UIState.READY)
        return device

    def ui_state_payload(self) -> dict:
        return {
            "state": self.ui_state.value,
            "selected": self.selected_device.model_dump(mode="json") if self.selected_device else None,
        }

    async def _set_ui_state(self, state: UIState) -> None:
        self.ui_state = state
        await self._emit("ui_state", self.ui_state_payload())

    # --- Transfers ---

    def _new_session(self, role: Role, device: PresenceEntry, plan: FileTransferPlan | None = None) -> TransferSession:
        return TransferSession(
            role=role,
            link=self._link_factory(),
            peer_device_id=device.id,
            peer_device_name=device.name,
            send_signal=self._signaling.send,
            state_callback=self._on_state_change,
            progress_callback=self._on_progress,
            on_file=self._save_file,
            on_teardown=self._on_teardown,
            plan=plan,
            **self._session_options,
        )

    def get_transfer(self) -> TransferInfo | None:
        return self.session.info if self.session else None

    async def send_files(self, file_paths: list[str], peer_id: str | None = None) -> TransferInfo:
        """Offer ``file_paths`` to the selected (or given) device."""
        if self.session is not None:
            raise SessionBusyError("A transfer is already in progress")
        if peer_id is not None:
            await self.select_device(peer_id)
        if self.selected_device is None:
            raise NoDeviceSelectedError("Please select a device first")

        plan = FileTransferPlan.from_paths(file_paths)
        device = self.selected_device
        logger.info(f"Initiating transfer of {len(plan.files)} file(s) to {device.name}")

        session = self._new_session(Role.INITIATOR, device, plan)
        self.session = session
        await self._set_ui_state(UIState.TRANSFERRING)
        await self._notify("info", "Sending transfer request...")
        await session.start()
        return session.info

    def _require_session(self) -> TransferSession:
        if self.session is None:
            raise NoSessionError("No transfer in progress")
        return self.session

    async def accept(self) -> TransferInfo:
        session = self._require_session()
        if session.role != Role.RESPONDER:
            raise NegotiationError("Only incoming transfers can be accepted")
        await session.accept()
        if self.session is session:
            await self._set_ui_state(UIState.TRANSFERRING)
        return session.info

    async def reject(self) -> TransferInfo:
        session = self._require_session()
        if session.role != Role.RESPONDER:
            raise NegotiationError("Only incoming transfers can be rejected")
        await session.reject()
        return session.info

    async def cancel(self) -> TransferInfo | None:
        """Cancel whatever is in flight; a no-op when idle."""
        session = self.session
        if session is None:
            return None
        await session.cancel()
        return session.info

    async def rename(self, name: str) -> None:
        """Change the device name and re-register with the relay."""
        name = name.strip()
        if not name or name == self.device_name:
            return
        await self._signaling.register(name)

    async def _save_file(self, received: ReceivedFile) -> None:
        try:
            path = await self._sink.save(received)
        except OSError as e:
            logger.error(f"Error saving {received.name}: {e}")
            await self._notify("error", f"Error saving file: {e}")
            return
        await self._emit("file_received", {
            "name": received.name,
            "size": received.size,
            "mime_type": received.mime_type,
            "path": path,
        })

    async def _on_teardown(self, session: TransferSession) -> None:
        if self.session is not session:
            return
        self.session = None
        # Return to device selection; a lone device stays ready to receive files.
        if len(self.devices) == 1:
            self.selected_device = self.devices[0]
            self.auto_selected = True
        else:
            self.selected_device = None
            self.auto_selected = False
        await self._set_ui_state(self._idle_state())

    async def _on_relay_connection(self, connected: bool) -> None:
        await self._emit("status", {"connected": connected})
        if connected:
            return
        # A new registration means a new id; nothing from before survives.
        if self.session is not None:
            await self.session.fail("Connection to relay lost")
        self.devices = []
        self.selected_device = None
        self.auto_selected = False
        await self._emit("devices", self.devices_payload())
        await self._set_ui_state(UIState.NO_DEVICES)

    async def _on_progress(self, info: TransferInfo) -> None:
        """Called by the session on batched progress updates."""
        await self._emit("transfer_progress", info.model_dump())

    async def _on_state_change(self, info: TransferInfo) -> None:
        """Called by the session on state changes."""
        await self._emit("transfer_state", info.model_dump())

        # Generate user-facing notifications
        notification = None
        if info.state == TransferState.COMPLETED:
            notification = {"type": "success", "message": "Transfer complete!"}
        elif info.state == TransferState.FAILED:
            notification = {"type": "error", "message": info.error_message or "Transfer failed"}
        elif info.state == TransferState.CANCELLED:
            notification = {"type": "info", "message": "Transfer cancelled"}
        elif info.state == TransferState.REJECTED:
            message = (
                "Transfer was declined" if info.direction == TransferDirection.SENDING
                else "Transfer declined"
            )
            notification = {"type": "warning", "message": message}

        if notification:
            await self._emit("notification", notification)

"""
Transfer session — one transfer attempt with one remote device.

Binds the negotiation state machine, the peer channel, the engine (sending
task or file assembler) and the consent decision together, and owns the
single teardown path used for completion, failure, rejection and
cancellation alike.
"""

import asyncio
import logging
import uuid

from config import CONSENT_TIMEOUT, GRACE_DELAY, PROGRESS_EVERY_CHUNKS
from errors import AirShareError, InvalidTransitionError, NegotiationError
from peer.rtc import FAILED_CONNECTION_STATES
from signaling.negotiation import NegotiationState, NegotiationStateMachine, Role
from transfer.engine import CHANNEL_OPEN, FileAssembler, send_files
from transfer.models import (
    FINISHED_STATES,
    FileTransferPlan,
    OfferSummary,
    TransferDirection,
    TransferInfo,
    TransferProgress,
    TransferState,
)

logger = logging.getLogger(__name__)


class TransferSession:
    """A single send or receive attempt."""

    def __init__(
        self,
        role: Role,
        link,
        peer_device_id: str,
        peer_device_name: str,
        send_signal,
        state_callback,
        progress_callback,
        on_file,
        on_teardown,
        plan: FileTransferPlan | None = None,
        grace_delay: float = GRACE_DELAY,
        consent_timeout: float = CONSENT_TIMEOUT,
        engine_options: dict | None = None,
    ) -> None:
        """
        Args:
            role: INITIATOR sends ``plan``; RESPONDER waits for an offer.
            link: Peer-connection capability (``peer.rtc.RTCPeerLink``).
            send_signal: async fn(message) writing to the relay.
            state_callback: async fn(TransferInfo) on state changes.
            progress_callback: async fn(TransferInfo) on progress.
            on_file: async fn(ReceivedFile) for each received file.
            on_teardown: async fn(session), called once after teardown.
        """
        self.role = role
        self.link = link
        self.plan = plan
        self.channel = None
        self.consent: bool | None = None
        self.progress = TransferProgress()
        self.negotiation = NegotiationStateMachine(role, link, peer_device_id, send_signal)
        self.info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            direction=(
                TransferDirection.SENDING if role == Role.INITIATOR
                else TransferDirection.RECEIVING
            ),
            state=TransferState.AWAITING_ACCEPTANCE,
            peer_device_id=peer_device_id,
            peer_device_name=peer_device_name,
        )
        self.assembler: FileAssembler | None = None

        self._state_callback = state_callback
        self._progress_callback = progress_callback
        self._on_file = on_file
        self._on_teardown = on_teardown
        self._grace_delay = grace_delay
        self._consent_timeout = consent_timeout
        self._engine_options = engine_options or {}
        self._send_task: asyncio.Task | None = None
        self._grace_task: asyncio.Task | None = None
        self._consent_task: asyncio.Task | None = None
        self._torn_down = False

        link.on_channel = self._adopt_channel
        link.on_state_change = self._on_connection_state

    @property
    def peer_device_id(self) -> str:
        return self.info.peer_device_id

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def finished(self) -> bool:
        return self.info.state in FINISHED_STATES

    async def _set_state(self, state: TransferState, error: str | None = None) -> None:
        self.info.state = state
        if error is not None:
            self.info.error_message = error
        await self._state_callback(self.info)

    def _describe(self, summary: OfferSummary) -> None:
        self.info.file_names = summary.file_name
        self.info.file_count = summary.file_count
        self.info.total_bytes = summary.file_size

    # --- Initiator ---

    async def start(self) -> None:
        """Open the data channel and send the offer."""
        self._describe(self.plan.summary())
        self._bind_channel(self.link.create_channel())
        await self._set_state(TransferState.AWAITING_ACCEPTANCE)
        try:
            await self.negotiation.create_offer(self.plan)
        except NegotiationError as e:
            await self.fail(f"Failed to initiate transfer: {e}")

    async def handle_answer(self, answer: dict) -> None:
        if self._torn_down:
            return
        try:
            await self.negotiation.handle_answer(answer)
        except NegotiationError as e:
            await self.fail(f"Connection error: {e}")
            return
        await self._set_state(TransferState.CONNECTING)

    async def handle_remote_accept(self) -> None:
        logger.info(f"{self.info.peer_device_name} accepted the transfer")
        if not self._torn_down and self.info.state == TransferState.AWAITING_ACCEPTANCE:
            await self._set_state(TransferState.CONNECTING)

    async def handle_remote_reject(self) -> None:
        """The receiver declined: nothing was sent, stop here."""
        if self._torn_down:
            return
        logger.info(f"{self.info.peer_device_name} declined the transfer")
        await self._set_state(TransferState.REJECTED)
        await self.teardown()

    async def _run_send(self) -> None:
        try:
            await send_files(
                self.plan,
                self.channel,
                self.progress,
                self._report_progress,
                **self._engine_options,
            )
        except AirShareError as e:
            logger.error(f"Send error: {e}")
            await self.fail(f"Transfer failed: {e}")
            return

        await self._set_state(TransferState.COMPLETED)
        await asyncio.sleep(self._grace_delay)
        await self.teardown()

    # --- Responder ---

    def receive_offer(self, offer: dict, summary: OfferSummary) -> None:
        """Keep the offer pending until the user accepts or rejects it."""
        self.negotiation.receive_offer(offer, summary)
        self._describe(summary)
        self._consent_task = asyncio.create_task(self._expire_consent())

    async def _expire_consent(self) -> None:
        await asyncio.sleep(self._consent_timeout)
        if self.negotiation.state == NegotiationState.OFFERED:
            logger.info(f"Transfer {self.info.transfer_id} timed out waiting for acceptance")
            await self.reject()

    async def accept(self) -> None:
        if self.negotiation.state != NegotiationState.OFFERED:
            raise InvalidTransitionError(f"Cannot accept from {self.negotiation.state.value}")
        self.consent = True
        self._cancel_consent_timer()
        self.progress.reset(self.info.total_bytes)
        self.assembler = FileAssembler(
            self.progress,
            self._on_file,
            self._report_progress,
            progress_every=self._engine_options.get("progress_every", PROGRESS_EVERY_CHUNKS),
        )
        try:
            await self.negotiation.accept()
        except NegotiationError as e:
            await self.fail(f"Failed to accept transfer: {e}")
            return
        await self._set_state(TransferState.CONNECTING)

    async def reject(self) -> None:
        self.consent = False
        self._cancel_consent_timer()
        await self.negotiation.reject()
        await self._set_state(TransferState.REJECTED)
        await self.teardown()

    def _cancel_consent_timer(self) -> None:
        if self._consent_task and self._consent_task is not asyncio.current_task():
            self._consent_task.cancel()
        self._consent_task = None

    # --- Both roles ---

    async def handle_candidate(self, candidate: dict) -> None:
        if not self._torn_down:
            await self.negotiation.handle_candidate(candidate)

    def _adopt_channel(self, channel) -> None:
        if self._torn_down:
            channel.close()
            return
        self._bind_channel(channel)
        if channel.ready_state == CHANNEL_OPEN:
            asyncio.ensure_future(self._on_channel_open())

    def _bind_channel(self, channel) -> None:
        self.channel = channel
        channel.bind(self._on_channel_open, self._on_channel_message, self._on_channel_close)

    async def _on_channel_open(self) -> None:
        if self._torn_down or self.negotiation.state == NegotiationState.CONNECTED:
            return
        try:
            self.negotiation.mark_connected()
        except NegotiationError as e:
            await self.fail(f"Connection error: {e}")
            return
        await self._set_state(TransferState.TRANSFERRING)
        if self.role == Role.INITIATOR:
            self._send_task = asyncio.create_task(self._run_send())

    async def _on_channel_message(self, data) -> None:
        if self._torn_down or self.assembler is None:
            return
        await self.assembler.handle_frame(data)
        if self.assembler.completed and self._grace_task is None:
            await self._set_state(TransferState.COMPLETED)
            self._grace_task = asyncio.create_task(self._teardown_after_grace())

    async def _on_channel_close(self) -> None:
        logger.info("Data channel closed")
        if not self._torn_down and not self.finished:
            await self.fail("Connection closed")

    async def _on_connection_state(self, state: str) -> None:
        if state in FAILED_CONNECTION_STATES and not self._torn_down and not self.finished:
            await self.fail("Connection failed")

    async def _teardown_after_grace(self) -> None:
        await asyncio.sleep(self._grace_delay)
        await self.teardown()

    async def _report_progress(self, progress: TransferProgress) -> None:
        self.info.transferred_bytes = progress.transferred_bytes
        self.info.progress_percent = progress.percent
        self.info.speed_bps = progress.speed_bps
        await self._progress_callback(self.info)

    async def fail(self, message: str) -> None:
        """Surface a failure and tear the session down."""
        if self._torn_down:
            return
        self.negotiation.fail(message)
        await self._set_state(TransferState.FAILED, error=message)
        await self.teardown()

    async def cancel(self) -> None:
        """User cancellation; safe from any state."""
        if self._torn_down:
            return
        if self.negotiation.state == NegotiationState.OFFERED:
            await self.reject()
            return
        if not self.finished:
            await self._set_state(TransferState.CANCELLED)
        await self.teardown()

    async def teardown(self) -> None:
        """Release everything the session holds. Calling it again is a no-op."""
        if self._torn_down:
            return
        self._torn_down = True

        current = asyncio.current_task()
        for task in (self._send_task, self._grace_task, self._consent_task):
            if task and task is not current and not task.done():
                task.cancel()

        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as e:
                logger.debug(f"Error closing channel: {e}")
            self.channel = None

        self.negotiation.close()
        try:
            await self.link.close()
        except Exception as e:
            logger.debug(f"Error closing peer connection: {e}")

        self.plan = None
        self.assembler = None
        self.progress.reset()
        logger.info(f"Session {self.info.transfer_id} torn down ({self.info.state.value})")
        await self._on_teardown(self)

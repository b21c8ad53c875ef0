"""
Negotiation state machine for one peer connection attempt.

Drives the offer/answer/candidate exchange through the relay and holds back
remote reachability candidates until the remote description is in place.

The ``link`` collaborator is the peer-connection capability (see
``peer.rtc.RTCPeerLink``) and must provide the coroutines ``create_offer()``,
``create_answer()``, ``set_remote_description(desc)``,
``add_ice_candidate(candidate)`` and ``close()``.
"""

import logging
from enum import Enum

from errors import InvalidTransitionError, NegotiationError
from relay.models import MessageType
from transfer.models import FileTransferPlan, OfferSummary

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    OFFERED = "offered"
    ANSWERING = "answering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


TERMINAL_STATES = frozenset({NegotiationState.CLOSED, NegotiationState.FAILED})

# Forward transitions per role. CLOSED and FAILED are reachable from any
# non-terminal state and are handled separately.
_TRANSITIONS = {
    Role.INITIATOR: {
        NegotiationState.IDLE: {NegotiationState.OFFERING},
        NegotiationState.OFFERING: {NegotiationState.CONNECTING},
        NegotiationState.CONNECTING: {NegotiationState.CONNECTED},
    },
    Role.RESPONDER: {
        NegotiationState.IDLE: {NegotiationState.OFFERED},
        NegotiationState.OFFERED: {NegotiationState.ANSWERING},
        NegotiationState.ANSWERING: {NegotiationState.CONNECTING},
        NegotiationState.CONNECTING: {NegotiationState.CONNECTED},
    },
}


class NegotiationStateMachine:
    """Offer/answer/candidate exchange with one remote device."""

    def __init__(self, role: Role, link, remote_device_id: str, send_signal) -> None:
        """
        Args:
            role: Whether this side sends the offer or answers it.
            link: Peer-connection capability.
            remote_device_id: Relay id of the other device.
            send_signal: async fn(message: dict) that writes to the relay.
        """
        self.role = role
        self.link = link
        self.remote_device_id = remote_device_id
        self.state = NegotiationState.IDLE
        self.pending_candidates: list[dict] = []
        self.summary: OfferSummary | None = None
        self._send_signal = send_signal
        self._retained_offer: dict | None = None
        self._remote_description_applied = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def remote_description_applied(self) -> bool:
        return self._remote_description_applied

    def _transition(self, new_state: NegotiationState) -> None:
        allowed = _TRANSITIONS[self.role].get(self.state, set())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"{self.role.value}: cannot go from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"Negotiation {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def _signal(self, message_type: str, **fields) -> None:
        await self._send_signal({"type": message_type, "target": self.remote_device_id, **fields})

    # --- Initiator ---

    async def create_offer(self, plan: FileTransferPlan) -> None:
        """Create the local offer and send it with the plan summary."""
        self._transition(NegotiationState.OFFERING)
        self.summary = plan.summary()
        try:
            offer = await self.link.create_offer()
        except Exception as e:
            self.fail(f"could not create offer: {e}")
            raise NegotiationError(f"Could not create offer: {e}") from e

        await self._signal(
            MessageType.OFFER,
            data=offer,
            **self.summary.model_dump(by_alias=True),
        )
        logger.info(f"Offer sent to {self.remote_device_id} ({self.summary.file_count} file(s))")

    async def handle_answer(self, answer: dict) -> None:
        """Apply the responder's answer as the remote description."""
        if self.role != Role.INITIATOR:
            raise InvalidTransitionError("Only the initiator accepts answers")
        if self.state == NegotiationState.CONNECTING:
            logger.warning("Ignoring duplicate answer")
            return
        self._transition(NegotiationState.CONNECTING)
        await self._apply_remote_description(answer)

    # --- Responder ---

    def receive_offer(self, offer: dict, summary: OfferSummary) -> None:
        """Hold the offer until the user decides; nothing is applied yet."""
        self._transition(NegotiationState.OFFERED)
        self._retained_offer = offer
        self.summary = summary

    async def accept(self) -> None:
        """Consent granted: answer the retained offer."""
        self._transition(NegotiationState.ANSWERING)
        offer, self._retained_offer = self._retained_offer, None
        await self._signal(MessageType.TRANSFER_ACCEPT)
        await self._apply_remote_description(offer)

        try:
            answer = await self.link.create_answer()
        except Exception as e:
            self.fail(f"could not create answer: {e}")
            raise NegotiationError(f"Could not create answer: {e}") from e

        await self._signal(MessageType.ANSWER, data=answer)
        self._transition(NegotiationState.CONNECTING)
        logger.info(f"Answer sent to {self.remote_device_id}")

    async def reject(self) -> None:
        """Consent denied: tell the offerer and stop."""
        if self.state != NegotiationState.OFFERED:
            raise InvalidTransitionError(f"Cannot reject from {self.state.value}")
        await self._signal(MessageType.TRANSFER_REJECT)
        self.close()

    # --- Both roles ---

    async def handle_candidate(self, candidate: dict) -> None:
        """Apply a remote candidate now, or buffer it until the remote description is set."""
        if self.is_terminal:
            logger.debug("Dropping candidate for a finished negotiation")
            return
        if not self._remote_description_applied:
            logger.debug("Remote description not set, buffering candidate")
            self.pending_candidates.append(candidate)
            return
        try:
            await self.link.add_ice_candidate(candidate)
        except Exception as e:
            logger.error(f"Error adding candidate: {e}")

    async def _apply_remote_description(self, description: dict | None) -> None:
        if description is None:
            self.fail("no remote description")
            raise NegotiationError("No remote description to apply")
        try:
            await self.link.set_remote_description(description)
        except Exception as e:
            self.fail(f"could not apply remote description: {e}")
            raise NegotiationError(f"Could not apply remote description: {e}") from e

        self._remote_description_applied = True
        await self._flush_pending_candidates()

    async def _flush_pending_candidates(self) -> None:
        if not self.pending_candidates:
            return
        candidates, self.pending_candidates = self.pending_candidates, []
        logger.info(f"Adding {len(candidates)} buffered candidates")
        for candidate in candidates:
            try:
                await self.link.add_ice_candidate(candidate)
            except Exception as e:
                logger.error(f"Error adding buffered candidate: {e}")

    def mark_connected(self) -> None:
        """The transport reports the peer channel is open."""
        if self.state == NegotiationState.CONNECTED:
            return
        self._transition(NegotiationState.CONNECTED)
        logger.info(f"Peer channel established with {self.remote_device_id}")

    def fail(self, reason: str = "") -> None:
        if self.is_terminal:
            return
        logger.warning(f"Negotiation with {self.remote_device_id} failed: {reason}")
        self.state = NegotiationState.FAILED
        self._release()

    def close(self) -> None:
        if self.is_terminal:
            return
        self.state = NegotiationState.CLOSED
        self._release()

    def _release(self) -> None:
        self.pending_candidates = []
        self._retained_offer = None

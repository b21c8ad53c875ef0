"""
WebRTC peer link built on aiortc.

aiortc gathers all local candidates before ``setLocalDescription`` returns,
so our own candidates travel inside the offer/answer SDP. Remote candidates
trickled by browser peers are still accepted through ``add_ice_candidate``.
"""

import logging

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from config import DATA_CHANNEL_LABEL, DATA_CHANNEL_MAX_RETRANSMITS, ICE_SERVERS

logger = logging.getLogger(__name__)

FAILED_CONNECTION_STATES = frozenset({"failed", "closed"})


class RTCChannel:
    """Thin wrapper over an aiortc data channel."""

    def __init__(self, channel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def send(self, data: str | bytes) -> None:
        self._channel.send(data)

    def close(self) -> None:
        self._channel.close()

    def bind(self, on_open, on_message, on_close) -> None:
        """Attach session handlers; each may be a plain function or a coroutine."""
        self._channel.on("open", on_open)
        self._channel.on("message", on_message)
        self._channel.on("close", on_close)


class RTCPeerLink:
    """One RTCPeerConnection, exposed as offer/answer/candidate primitives."""

    def __init__(self, ice_servers: list[str] = ICE_SERVERS) -> None:
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        )
        self.pc = RTCPeerConnection(configuration=configuration)
        # Set by the owning session.
        self.on_channel = None  # fn(RTCChannel) for channels opened by the peer
        self.on_state_change = None  # async fn(state: str)

        self.pc.on("datachannel", self._handle_datachannel)
        self.pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def create_channel(self, label: str = DATA_CHANNEL_LABEL) -> RTCChannel:
        channel = self.pc.createDataChannel(
            label, ordered=True, maxRetransmits=DATA_CHANNEL_MAX_RETRANSMITS
        )
        return RTCChannel(channel)

    async def create_offer(self) -> dict:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: dict) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: dict) -> None:
        """Add a browser-style candidate ``{candidate, sdpMid, sdpMLineIndex}``."""
        line = (candidate or {}).get("candidate") or ""
        if not line:
            # End-of-candidates marker.
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice_candidate = candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self.pc.close()

    def _local_description(self) -> dict:
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    def _handle_datachannel(self, channel) -> None:
        logger.info(f"Data channel received: {channel.label}")
        if self.on_channel:
            self.on_channel(RTCChannel(channel))

    async def _handle_connection_state(self) -> None:
        state = self.pc.connectionState
        logger.info(f"Connection state: {state}")
        if self.on_state_change:
            await self.on_state_change(state)

"""
Peer-channel file transfer engine.

Sending turns each file into a ``file-start`` control frame, a run of binary
chunks and a ``file-end`` frame, pausing whenever the channel's unsent
backlog is above the flow-control ceiling. Receiving reassembles those frames
into complete files, one at a time.

The channel is anything with ``ready_state``, ``buffered_amount`` and
``send(str | bytes)``; see ``peer.rtc.RTCChannel``.
"""

import asyncio
import json
import logging

from pydantic import ValidationError

from config import (
    BUFFER_POLL_INTERVAL,
    CHUNK_SIZE,
    MAX_BUFFER,
    PROGRESS_EVERY_CHUNKS,
)
from errors import ChannelError, FrameDecodeError, TransferIOError
from transfer.models import (
    FileEntry,
    FileStartFrame,
    FileTransferPlan,
    FrameType,
    ReceivedFile,
    TransferProgress,
)

logger = logging.getLogger(__name__)

CHANNEL_OPEN = "open"
CHUNK = "chunk"


# --- Sending ---

def _send_frame(channel, data: str | bytes) -> None:
    if channel.ready_state != CHANNEL_OPEN:
        raise ChannelError(f"Channel is {channel.ready_state}")
    try:
        channel.send(data)
    except Exception as e:
        raise TransferIOError(f"Failed to send frame: {e}") from e


def _send_control(channel, frame: dict) -> None:
    _send_frame(channel, json.dumps(frame))


async def wait_for_buffer(channel, max_buffer: int, poll_interval: float) -> None:
    """Poll until the channel backlog is at or below ``max_buffer``."""
    while channel.buffered_amount > max_buffer:
        if channel.ready_state != CHANNEL_OPEN:
            raise ChannelError("Channel closed while waiting for the send buffer to drain")
        await asyncio.sleep(poll_interval)


async def send_file(
    entry: FileEntry,
    index: int,
    total: int,
    channel,
    progress: TransferProgress,
    progress_callback=None,
    chunk_size: int = CHUNK_SIZE,
    max_buffer: int = MAX_BUFFER,
    poll_interval: float = BUFFER_POLL_INTERVAL,
    progress_every: int = PROGRESS_EVERY_CHUNKS,
) -> int:
    """Send one file. Returns the number of chunks sent."""
    start = FileStartFrame(
        name=entry.name,
        size=entry.size,
        mime_type=entry.mime_type,
        index=index,
        total=total,
    )
    _send_control(channel, start.model_dump(by_alias=True))

    chunk_count = 0
    try:
        with open(entry.path, "rb") as f:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break

                await wait_for_buffer(channel, max_buffer, poll_interval)
                _send_frame(channel, chunk)

                progress.advance(len(chunk))
                chunk_count += 1
                if progress_callback and chunk_count % progress_every == 0:
                    await progress_callback(progress)
    except OSError as e:
        raise TransferIOError(f"Failed to read '{entry.name}': {e}") from e

    _send_control(channel, {"type": FrameType.FILE_END})
    logger.info(f"File {entry.name} sent ({chunk_count} chunks)")
    if progress_callback:
        await progress_callback(progress)
    return chunk_count


async def send_files(
    plan: FileTransferPlan,
    channel,
    progress: TransferProgress,
    progress_callback=None,
    **options,
) -> None:
    """
    Stream every file of ``plan`` over ``channel``, then ``transfer-complete``.

    Args:
        plan: The files to send, in order. Each entry needs a local ``path``.
        channel: An open peer channel.
        progress: Mutated in place as chunks go out.
        progress_callback: async fn(progress) for batched progress updates.
        **options: chunk_size, max_buffer, poll_interval, progress_every.

    Raises:
        ChannelError: The channel closed underneath the transfer.
        TransferIOError: A file could not be read or a frame not sent.
    """
    progress.reset(plan.total_bytes)
    total = len(plan.files)
    for index, entry in enumerate(plan.files):
        logger.info(f"Sending file {index + 1}/{total}: {entry.name} ({entry.size} bytes)")
        await send_file(entry, index, total, channel, progress, progress_callback, **options)

    _send_control(channel, {"type": FrameType.TRANSFER_COMPLETE})
    logger.info("All files sent")


# --- Receiving ---

def decode_control_frame(text: str) -> dict:
    """Parse a text frame into a dict with a ``type`` key."""
    try:
        frame = json.loads(text)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"Invalid JSON frame: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise FrameDecodeError("Control frame has no type")
    return frame


class FileAssembler:
    """Rebuilds files from the frames of one receiving session."""

    def __init__(
        self,
        progress: TransferProgress,
        on_file,
        progress_callback=None,
        progress_every: int = PROGRESS_EVERY_CHUNKS,
    ) -> None:
        """
        Args:
            progress: Session progress, mutated as chunks arrive.
            on_file: async fn(ReceivedFile) called for every completed file.
            progress_callback: async fn(progress) for batched updates.
        """
        self.progress = progress
        self.current_file: FileStartFrame | None = None
        self.chunks: list[bytes] = []
        self.completed = False
        self._on_file = on_file
        self._progress_callback = progress_callback
        self._progress_every = progress_every

    async def handle_frame(self, data) -> str | None:
        """
        Apply one frame. Returns the kind of frame applied, or None if the
        frame was malformed or out of place and was dropped.
        """
        try:
            if isinstance(data, str):
                return await self._handle_control(decode_control_frame(data))
            if isinstance(data, (bytes, bytearray, memoryview)):
                return await self._handle_chunk(bytes(data))
            raise FrameDecodeError(f"Unexpected frame payload: {type(data).__name__}")
        except FrameDecodeError as e:
            logger.warning(f"Dropping frame: {e}")
            return None

    async def _handle_control(self, frame: dict) -> str:
        kind = frame["type"]

        if kind == FrameType.FILE_START:
            try:
                start = FileStartFrame.model_validate(frame)
            except ValidationError as e:
                raise FrameDecodeError(f"Invalid file-start frame: {e}") from e
            if self.current_file is not None:
                logger.warning(f"file-start for {start.name} before {self.current_file.name} ended")
            logger.info(f"Receiving file {start.index + 1}/{start.total}: {start.name} ({start.size} bytes)")
            self.current_file = start
            self.chunks = []
            if self.progress.total_bytes == 0:
                self.progress.reset(start.size)
            return kind

        if kind == FrameType.FILE_END:
            if self.current_file is None:
                raise FrameDecodeError("file-end without a file in progress")
            received = ReceivedFile(
                name=self.current_file.name,
                mime_type=self.current_file.mime_type,
                data=b"".join(self.chunks),
            )
            if received.size != self.current_file.size:
                logger.warning(
                    f"{received.name}: received {received.size} bytes, "
                    f"expected {self.current_file.size}"
                )
            self.current_file = None
            self.chunks = []
            if self._progress_callback:
                await self._progress_callback(self.progress)
            await self._on_file(received)
            return kind

        if kind == FrameType.TRANSFER_COMPLETE:
            logger.info("Transfer complete")
            self.completed = True
            return kind

        raise FrameDecodeError(f"Unknown frame type: {kind}")

    async def _handle_chunk(self, chunk: bytes) -> str:
        if self.current_file is None:
            raise FrameDecodeError("Binary frame without a file in progress")
        self.chunks.append(chunk)
        self.progress.advance(len(chunk))
        if self._progress_callback and len(self.chunks) % self._progress_every == 0:
            await self._progress_callback(self.progress)
        return CHUNK

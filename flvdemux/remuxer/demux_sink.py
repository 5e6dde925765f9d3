"""
Per-track output streams and the track registry.

Every demuxed track owns one OutputStream: a FIFO of (payload, ack) items
read by exactly one consumer. The ack of an item fires when the consumer
takes it, and the demuxer waits for that ack before queueing the next item
on the same track. Decoding therefore advances at the pace of the slowest
consumer, and a track never holds more than one un-acknowledged item.

Architecture:
  FLVDemuxer --push()--> OutputStream --read()/async for--> consumer
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from flvdemux.remuxer.aac_repacker import AACRepacker
from flvdemux.remuxer.flv_tags import TAG_TYPE_AUDIO, TAG_TYPE_VIDEO, BackpressureTimeout

logger = logging.getLogger(__name__)

Ack = Callable[[], None]


def _noop() -> None:
    pass


class TrackKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


_TAG_TYPE_KINDS = {
    TAG_TYPE_AUDIO: TrackKind.AUDIO,
    TAG_TYPE_VIDEO: TrackKind.VIDEO,
}


@dataclass(frozen=True, slots=True)
class TrackId:
    """Registry key: track kind plus the FLV stream id."""

    kind: TrackKind
    stream_id: int

    def __str__(self) -> str:
        return f"{self.kind.value}-{self.stream_id}"


class OutputStream:
    """
    Pull-style byte stream for one track.

    Usage:
        async for chunk in track.stream:
            handle(chunk)

    ``read()`` returns None once the end marker has been taken.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._items: deque[tuple[bytes | None, Ack]] = deque()
        self._waiter: asyncio.Future | None = None
        self._pending = False  # an enqueued payload has not been acknowledged yet
        self._end_queued = False
        self._finished = False  # end marker handed to the consumer
        self.items_delivered = 0
        self.bytes_delivered = 0

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def ended(self) -> bool:
        """True once the end marker has been queued."""
        return self._end_queued

    @property
    def finished(self) -> bool:
        """True once the consumer has read the end marker."""
        return self._finished

    def enqueue(self, payload: bytes | None, ack: Ack | None = None) -> None:
        """
        Append an item and wake a blocked reader.

        ``payload=None`` is the end-of-stream marker. ``ack`` is called exactly
        once, when the item is handed to the reader.
        """
        if self._end_queued:
            raise RuntimeError(f"stream {self.name} already ended")
        if payload is not None and self._pending:
            raise RuntimeError(f"stream {self.name}: enqueue while the previous item is still unacknowledged")

        if payload is None:
            self._end_queued = True
        else:
            self._pending = True
        self._items.append((payload, ack or _noop))
        self._wake()

    async def push(self, payload: bytes, timeout: float | None = None) -> None:
        """
        Enqueue a payload and wait until the consumer has taken it.

        Raises:
            BackpressureTimeout: If ``timeout`` elapses before the item is taken.
        """
        loop = asyncio.get_running_loop()
        delivered = loop.create_future()

        def ack() -> None:
            if not delivered.done():
                delivered.set_result(None)

        self.enqueue(payload, ack)
        if timeout is None:
            await delivered
            return
        try:
            await asyncio.wait_for(delivered, timeout)
        except asyncio.TimeoutError as e:
            raise BackpressureTimeout(f"stream {self.name}: item not consumed within {timeout}s") from e

    def end(self) -> None:
        """Queue the end-of-stream marker. No-op if already ended."""
        if not self._end_queued:
            self.enqueue(None)

    def abort(self) -> None:
        """
        Drop queued items and end the stream.

        The acks of dropped items fire, so a producer waiting on one is
        released without the single-pending rule being broken.
        """
        dropped = list(self._items)
        self._items.clear()
        self._pending = False
        for payload, ack in dropped:
            ack()
        if dropped:
            logger.debug("[demux_sink] Dropped %d queued item(s) on %s", len(dropped), self.name)
        if not self._finished:
            self._items.append((None, _noop))
            self._end_queued = True
            self._wake()

    async def read(self) -> bytes | None:
        """Take the next payload, waiting for one if needed. None at end of stream."""
        while not self._items:
            if self._finished:
                return None
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None

        payload, ack = self._items.popleft()
        if payload is None:
            self._finished = True
        else:
            self._pending = False
            self.items_delivered += 1
            self.bytes_delivered += len(payload)
        ack()
        return payload

    async def drain(self) -> int:
        """Read and discard everything up to the end marker. Returns bytes discarded."""
        total = 0
        while (chunk := await self.read()) is not None:
            total += len(chunk)
        return total

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def __repr__(self) -> str:
        return f"OutputStream({self.name!r}, items={len(self._items)}, ended={self._end_queued})"


@dataclass(eq=False)
class Track:
    """One demuxed elementary stream."""

    id: TrackId
    stream: OutputStream
    aac: AACRepacker | None = None
    sound_format: int | None = None  # first observed SoundFormat, audio tracks only
    tags: int = field(default=0)

    @property
    def kind(self) -> TrackKind:
        return self.id.kind


class TrackRegistry:
    """
    Lazily creates tracks keyed by TrackId and announces each one once.

    ``on_track`` is called synchronously on creation, before anything is
    queued on the new stream.
    """

    def __init__(self, on_track: Callable[[Track], None] | None = None) -> None:
        self._tracks: dict[TrackId, Track] = {}
        self._on_track = on_track

    @property
    def tracks(self) -> list[Track]:
        return list(self._tracks.values())

    def __len__(self) -> int:
        return len(self._tracks)

    def get(self, tag_type: int, stream_id: int) -> Track:
        kind = _TAG_TYPE_KINDS.get(tag_type)
        if kind is None:
            raise ValueError(f"unsupported stream type: 0x{tag_type:02X}")

        track_id = TrackId(kind, stream_id)
        track = self._tracks.get(track_id)
        if track is None:
            track = Track(id=track_id, stream=OutputStream(str(track_id)))
            self._tracks[track_id] = track
            logger.info("[demux_sink] New %s track (stream id %d)", kind.value, stream_id)
            if self._on_track is not None:
                self._on_track(track)
        return track

    def end_all(self) -> None:
        """Queue the end marker on every track."""
        for track in self._tracks.values():
            track.stream.end()

    def abort_all(self) -> None:
        """Release pending items and end every track."""
        for track in self._tracks.values():
            track.stream.abort()

"""
Streaming FLV demuxer.

Reads an FLV byte stream via an async iterator and splits it into one
OutputStream per audio/video track, plus metadata records. Designed for
on-the-fly demuxing without buffering the entire file.

Architecture:
  AsyncIterator[bytes] -> StreamBuffer -> FLVTagReader -> dispatch
      audio (AAC)   -> AACRepacker -> ADTS header + raw frame -> OutputStream
      audio (other) -> OutputStream
      video         -> OutputStream (body forwarded as-is)
      metadata      -> AMF0 decode -> on_metadata(MetadataRecord)

The demuxer suspends in exactly two places: waiting for more input bytes,
and waiting for a track consumer to take the item just queued.

Usage:
    def on_track(track):
        asyncio.create_task(consume(track.stream))

    demuxer = FLVDemuxer(on_track=on_track, on_metadata=print)
    await demuxer.run(source)
"""

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from flvdemux.remuxer import amf0
from flvdemux.remuxer.aac_repacker import AACRepacker
from flvdemux.remuxer.demux_sink import Track, TrackRegistry
from flvdemux.remuxer.flv_tags import (
    TAG_TYPE_AUDIO,
    TAG_TYPE_METADATA,
    TAG_TYPE_VIDEO,
    AudioTagHeader,
    FLVDemuxError,
    FLVFormatError,
    FLVHeader,
    FLVTag,
    FLVTagReader,
    ReaderState,
)

logger = logging.getLogger(__name__)


class StreamBuffer:
    """
    Accumulating byte buffer between the async source and the tag reader.

    Collects chunks as they arrive and hands out exact-size reads, keeping
    only the unconsumed tail in memory.
    """

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._total: int = 0
        self._consumed: int = 0  # Logical bytes consumed (for offset tracking)

    @property
    def available(self) -> int:
        """Number of buffered bytes available for reading."""
        return self._total

    @property
    def consumed(self) -> int:
        """Total bytes consumed so far (absolute stream offset)."""
        return self._consumed

    def append(self, data: bytes) -> None:
        """Add bytes to the buffer."""
        if data:
            self._chunks.append(data)
            self._total += len(data)

    def consume(self, size: int) -> bytes:
        """Remove and return exactly size bytes from the front of the buffer."""
        if size > self._total:
            raise ValueError(f"cannot consume {size} bytes, only {self._total} buffered")

        first = self._chunks[0] if self._chunks else b""
        if len(first) >= size:
            # Fast path: the whole read lies in the first chunk
            result = first[:size]
            if len(first) == size:
                self._chunks.pop(0)
            else:
                self._chunks[0] = first[size:]
        else:
            parts = []
            remaining = size
            while remaining > 0:
                chunk = self._chunks[0]
                if len(chunk) <= remaining:
                    parts.append(chunk)
                    remaining -= len(chunk)
                    self._chunks.pop(0)
                else:
                    parts.append(chunk[:remaining])
                    self._chunks[0] = chunk[remaining:]
                    remaining = 0
            result = b"".join(parts)

        self._total -= size
        self._consumed += size
        return bytes(result)


@dataclass(slots=True)
class MetadataRecord:
    """A decoded script-data tag, e.g. ``onMetaData``. ``timestamp`` is in milliseconds."""

    name: str
    value: Any
    timestamp: int = 0


class FLVDemuxer:
    """
    Streaming async FLV demuxer.

    Callbacks:
      on_track(track): once per distinct (kind, stream id), before the first
        payload of that track is queued. The callback must arrange for
        ``track.stream`` to be consumed, otherwise decoding stalls on it.
      on_metadata(record): once per metadata tag.

    Errors:
      FLVFormatError is raised from ``run()`` and is terminal. Every open
      track is ended before the error propagates, so consumers never hang.
    """

    def __init__(
        self,
        on_track: Callable[[Track], None] | None = None,
        on_metadata: Callable[[MetadataRecord], None] | None = None,
        ack_timeout: float | None = None,
    ) -> None:
        self._reader = FLVTagReader()
        self._buf = StreamBuffer()
        self._registry = TrackRegistry(on_track)
        self._on_metadata = on_metadata
        self._ack_timeout = ack_timeout
        self._running = False
        self._aborted = False
        self.metadata: list[MetadataRecord] = []

    @property
    def header(self) -> FLVHeader | None:
        return self._reader.header

    @property
    def tracks(self) -> list[Track]:
        return self._registry.tracks

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def bytes_consumed(self) -> int:
        return self._buf.consumed

    def abort(self) -> None:
        """
        Stop decoding.

        Pending un-acknowledged items are released, every track receives its
        end marker, and ``run()`` returns when it next resumes.
        """
        if self._aborted:
            return
        logger.info("[flv_demuxer] Aborting after %d bytes", self._buf.consumed)
        self._aborted = True
        self._registry.abort_all()

    async def run(self, source: AsyncIterator[bytes]) -> None:
        """
        Decode ``source`` to exhaustion (or until aborted).

        Exhaustion of the iterator is the end-of-input signal: every track is
        then ended.
        """
        if self._running:
            raise RuntimeError("FLVDemuxer.run() is already in progress")
        self._running = True

        completed = False
        try:
            async for chunk in source:
                self._buf.append(chunk)
                await self._process_buffered()
                if self._aborted:
                    break
            completed = not self._aborted
        except FLVDemuxError as e:
            logger.error("[flv_demuxer] Decode failed at byte %d: %s", self._buf.consumed, e)
            raise
        finally:
            self._running = False
            if completed:
                self._finish()
            else:
                self._registry.abort_all()

    async def _process_buffered(self) -> None:
        """Feed the reader while the buffer can satisfy its next request."""
        reader = self._reader
        while not self._aborted and self._buf.available >= reader.needed:
            tag = reader.feed(self._buf.consume(reader.needed))
            if tag is not None:
                await self._dispatch(tag)

    def _finish(self) -> None:
        # Files normally end right after the trailing previous-tag-size
        clean_end = self._reader.state in (ReaderState.PREVIOUS_TAG_SIZE, ReaderState.TAG_TYPE)
        if self._buf.available or not clean_end:
            logger.warning(
                "[flv_demuxer] Input ended in state %s with %d unparsed byte(s)",
                self._reader.state.value,
                self._buf.available,
            )
        self._registry.end_all()
        logger.info(
            "[flv_demuxer] Finished: %d tags, %d tracks (%s), %d metadata records",
            self._reader.tags_read,
            len(self._registry),
            ", ".join(str(t.id) for t in self._registry.tracks),
            len(self.metadata),
        )

    # ── Dispatch ─────────────────────────────────────────────────────

    async def _dispatch(self, tag: FLVTag) -> None:
        logger.debug(
            "[flv_demuxer] Tag type=0x%02X len=%d ts=%d id=%d",
            tag.tag_type,
            tag.body_length,
            tag.timestamp_ms,
            tag.stream_id,
        )
        if tag.tag_type == TAG_TYPE_AUDIO:
            await self._dispatch_audio(tag)
        elif tag.tag_type == TAG_TYPE_VIDEO:
            track = self._registry.get(tag.tag_type, tag.stream_id)
            track.tags += 1
            await self._push(track, tag.body)
        elif tag.tag_type == TAG_TYPE_METADATA:
            self._dispatch_metadata(tag)
        else:
            raise FLVFormatError(f"unknown tag type: {tag.tag_type}")

    async def _dispatch_audio(self, tag: FLVTag) -> None:
        audio = AudioTagHeader.parse(tag.body[0])
        track = self._registry.get(tag.tag_type, tag.stream_id)
        track.tags += 1
        if track.sound_format is None:
            track.sound_format = audio.sound_format

        if not audio.is_aac:
            await self._push(track, tag.body[1:])
            return

        if len(tag.body) < 2:
            raise FLVFormatError("AAC audio tag is missing its packet type")
        if track.aac is None:
            track.aac = AACRepacker()
        # ADTS header then raw frame, strictly one after the other
        for item in track.aac.feed(tag.body[1], tag.body[2:]):
            await self._push(track, item)

    def _dispatch_metadata(self, tag: FLVTag) -> None:
        cursor = amf0.AMFCursor()
        try:
            name = amf0.decode(tag.body, cursor)
            value = amf0.decode(tag.body, cursor) if cursor.offset < len(tag.body) else None
        except amf0.AMFDecodeError as e:
            raise FLVFormatError(f"malformed metadata tag: {e}") from e

        if not isinstance(name, str):
            raise FLVFormatError(f"metadata name is not a string: {name!r}")

        record = MetadataRecord(name=name, value=value, timestamp=tag.timestamp_ms)
        self.metadata.append(record)
        logger.debug("[flv_demuxer] Metadata %r", name)
        if self._on_metadata is not None:
            self._on_metadata(record)

    async def _push(self, track: Track, payload: bytes) -> None:
        if self._aborted:
            return
        await track.stream.push(payload, self._ack_timeout)

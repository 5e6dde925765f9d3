import asyncio
import logging
from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from flvdemux.configs import settings
from flvdemux.remuxer.demux_sink import Track, TrackKind
from flvdemux.remuxer.flv_demuxer import FLVDemuxer, MetadataRecord
from flvdemux.remuxer.flv_tags import SOUND_FORMAT_AAC, SOUND_FORMAT_MP3, SOUND_FORMAT_MP3_8K, FLVDemuxError
from flvdemux.remuxer.media_source import HTTPMediaSource, MediaSource
from flvdemux.utils.http_utils import DownloadError

logger = logging.getLogger(__name__)

flv_router = APIRouter()

_AUDIO_MEDIA_TYPES = {
    SOUND_FORMAT_AAC: "audio/aac",
    SOUND_FORMAT_MP3: "audio/mpeg",
    SOUND_FORMAT_MP3_8K: "audio/mpeg",
}


def get_media_source(
    d: Annotated[str, Query(description="URL of the FLV stream to demux.")],
) -> MediaSource:
    return HTTPMediaSource(d)


def _media_type(track: Track) -> str:
    if track.kind is TrackKind.AUDIO:
        return _AUDIO_MEDIA_TYPES.get(track.sound_format, "application/octet-stream")
    return "application/octet-stream"


def _raise_for_demux_failure(exc: BaseException) -> None:
    """Translate a demux/upstream failure into an HTTPException."""
    if isinstance(exc, FLVDemuxError):
        raise HTTPException(status_code=422, detail=f"Invalid FLV stream: {exc}")
    if isinstance(exc, DownloadError):
        raise HTTPException(status_code=502, detail=exc.message)
    if isinstance(exc, httpx.HTTPStatusError):
        raise HTTPException(status_code=exc.response.status_code, detail="Upstream request failed")
    raise exc


class _Drainer:
    """Consumes tracks nobody asked for, so the demuxer never stalls on them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, track: Track) -> None:
        task = asyncio.create_task(track.stream.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class _DemuxSession:
    """Owns a running demux task for the lifetime of one streaming response."""

    def __init__(self, demuxer: FLVDemuxer, task: asyncio.Task, name: str) -> None:
        self.demuxer = demuxer
        self.task = task
        self.name = name
        self._closed = False

    async def close(self) -> None:
        """Abort decoding and reap the task. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.demuxer.abort()
        if not self.task.done():
            self.task.cancel()
        self.task.add_done_callback(self._log_failure)

    def _log_failure(self, task: asyncio.Task) -> None:
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            logger.warning("FLV stream %s ended with error: %s", self.name, exc)


@flv_router.get("/metadata")
async def flv_metadata(source: Annotated[MediaSource, Depends(get_media_source)]):
    """
    Return the first metadata record (usually ``onMetaData``) of an FLV stream.
    """
    records: list[MetadataRecord] = []

    def on_metadata(record: MetadataRecord) -> None:
        records.append(record)
        demuxer.abort()

    demuxer = FLVDemuxer(on_track=_Drainer(), on_metadata=on_metadata, ack_timeout=settings.ack_timeout)
    try:
        await demuxer.run(source.stream())
    except (FLVDemuxError, DownloadError, httpx.HTTPStatusError) as e:
        _raise_for_demux_failure(e)

    if not records:
        raise HTTPException(status_code=404, detail="No metadata tag found")
    record = records[0]
    return {"name": record.name, "timestamp": record.timestamp, "value": record.value}


@flv_router.get("/{kind}")
async def flv_track(kind: TrackKind, source: Annotated[MediaSource, Depends(get_media_source)]):
    """
    Stream the first audio or video track of an FLV stream.

    AAC audio is delivered as ADTS, other audio codecs as their raw frames,
    and video as the FLV video tag bodies.
    """
    selected: asyncio.Future[Track] = asyncio.get_running_loop().create_future()
    drain = _Drainer()

    def on_track(track: Track) -> None:
        if track.kind is kind and not selected.done():
            selected.set_result(track)
        else:
            drain(track)

    demuxer = FLVDemuxer(on_track=on_track, ack_timeout=settings.ack_timeout)
    demux_task = asyncio.create_task(demuxer.run(source.stream()))

    await asyncio.wait({selected, demux_task}, return_when=asyncio.FIRST_COMPLETED)
    if not selected.done():
        selected.cancel()
        exc = demux_task.exception()
        if exc is not None:
            _raise_for_demux_failure(exc)
        raise HTTPException(status_code=404, detail=f"No {kind.value} track found")

    track = selected.result()
    logger.info("Streaming %s track %s from %s", kind.value, track.id, source.name)

    session = _DemuxSession(demuxer, demux_task, source.name)

    async def track_body():
        try:
            async for chunk in track.stream:
                yield chunk
        finally:
            await session.close()

    return StreamingResponse(
        track_body(),
        media_type=_media_type(track),
        background=BackgroundTask(session.close),
    )

import asyncio

import pytest
from fastapi.testclient import TestClient

from flvdemux.configs import settings
from flvdemux.main import app
from flvdemux.remuxer.demux_sink import TrackKind
from flvdemux.routes.flv import flv_track, get_media_source
from flv_samples import (
    aac_raw_tag,
    aac_sequence_header_tag,
    audio_tag,
    build_flv,
    chunked,
    flv_header,
    metadata_tag,
    on_metadata_tag,
    video_tag,
)


class BytesMediaSource:
    def __init__(self, data: bytes, chunk_size: int = 16) -> None:
        self._data = data
        self._chunk_size = chunk_size

    @property
    def name(self) -> str:
        return "memory"

    def stream(self):
        return chunked(self._data, self._chunk_size)


@pytest.fixture
def serve():
    """Serve the given FLV bytes as the upstream for every /flv request."""

    def _serve(data: bytes) -> TestClient:
        app.dependency_overrides[get_media_source] = lambda: BytesMediaSource(data)
        return TestClient(app)

    yield _serve
    app.dependency_overrides.clear()


def test_health():
    assert TestClient(app).get("/health").json() == {"status": "healthy"}


def test_metadata_endpoint(serve):
    client = serve(build_flv(on_metadata_tag(), video_tag(b"frame")))
    response = client.get("/flv/metadata", params={"d": "http://upstream/live.flv"})

    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "onMetaData"
    assert body["value"]["width"] == 360
    assert body["timestamp"] == 0
    assert body["value"]["canSeekToEnd"] is True


def test_metadata_endpoint_reports_milliseconds(serve):
    client = serve(build_flv(metadata_tag("onCuePoint", b"\x05", timestamp=250 << 8)))
    body = client.get("/flv/metadata", params={"d": "http://upstream/live.flv"}).json()
    assert body == {"name": "onCuePoint", "timestamp": 250, "value": None}


def test_metadata_endpoint_rejects_deep_nesting(serve):
    nested = b"\x0a\x00\x00\x00\x01" * 5000 + b"\x05"
    client = serve(build_flv(metadata_tag("onMetaData", nested)))
    response = client.get("/flv/metadata", params={"d": "http://upstream/live.flv"})
    assert response.status_code == 422


def test_metadata_endpoint_without_metadata(serve):
    client = serve(build_flv(video_tag(b"frame")))
    response = client.get("/flv/metadata", params={"d": "http://upstream/live.flv"})
    assert response.status_code == 404


def test_audio_endpoint_streams_adts(serve):
    payloads = [bytes([i]) * 40 for i in range(3)]
    data = build_flv(
        on_metadata_tag(),
        aac_sequence_header_tag(object_type=2, sampling_index=4, channels=2),
        video_tag(b"\x17\x00frame"),
        *(aac_raw_tag(p) for p in payloads),
    )
    client = serve(data)
    response = client.get("/flv/audio", params={"d": "http://upstream/live.flv"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/aac"
    header = bytes.fromhex("fff15080") + bytes([(47 >> 3) & 0xFF, ((47 & 0x07) << 5) | 0x1F, 0xFC])
    assert response.content == b"".join(header + p for p in payloads)


def test_audio_endpoint_mp3(serve):
    client = serve(build_flv(audio_tag(b"\xff\xfbone"), audio_tag(b"\xff\xfbtwo")))
    response = client.get("/flv/audio", params={"d": "http://upstream/live.flv"})

    assert response.headers["content-type"] == "audio/mpeg"
    assert response.content == b"\xff\xfbone\xff\xfbtwo"


def test_video_endpoint(serve):
    client = serve(build_flv(audio_tag(b"a"), video_tag(b"v1"), audio_tag(b"b"), video_tag(b"v2")))
    response = client.get("/flv/video", params={"d": "http://upstream/live.flv"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.content == b"v1v2"


def test_missing_track_is_404(serve):
    client = serve(build_flv(audio_tag(b"a")))
    response = client.get("/flv/video", params={"d": "http://upstream/live.flv"})
    assert response.status_code == 404


def test_invalid_flv_is_422(serve):
    client = serve(b"<html>not flv</html>")
    response = client.get("/flv/audio", params={"d": "http://upstream/page.html"})
    assert response.status_code == 422


def test_unknown_kind_is_rejected(serve):
    client = serve(flv_header())
    response = client.get("/flv/subtitles", params={"d": "http://upstream/live.flv"})
    assert response.status_code == 422


def test_api_password_required(serve, monkeypatch):
    monkeypatch.setattr(settings, "api_password", "secret")
    client = serve(build_flv(video_tag(b"v")))

    assert client.get("/flv/video", params={"d": "http://upstream/live.flv"}).status_code == 403
    response = client.get("/flv/video", params={"d": "http://upstream/live.flv", "api_password": "secret"})
    assert response.status_code == 200
    assert response.content == b"v"


class StalledSource:
    """Delivers some bytes, then hangs like an idle live stream."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.release = asyncio.Event()

    @property
    def name(self) -> str:
        return "stalled"

    async def stream(self):
        yield self._data
        await self.release.wait()


@pytest.mark.asyncio
async def test_track_response_closed_before_body_is_read():
    source = StalledSource(flv_header() + b"\x00\x00\x00\x00" + video_tag(b"v1"))
    response = await flv_track(kind=TrackKind.VIDEO, source=source)

    # Body never iterated, only the response's background hook runs
    await response.background()
    await response.background()

    for _ in range(10):
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        if not pending:
            break
        await asyncio.sleep(0)
    assert pending == []

    chunks = await asyncio.wait_for(_collect(response.body_iterator), 1)
    assert chunks == []


async def _collect(body) -> list[bytes]:
    return [chunk async for chunk in body]

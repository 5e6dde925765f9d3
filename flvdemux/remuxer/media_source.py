"""
Byte sources feeding the FLV demuxer.

Decouples the demuxer from any specific transport. Each source exposes
``stream()``, an async iterator of byte chunks whose exhaustion marks the
end of input.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol, runtime_checkable

from flvdemux.configs import settings
from flvdemux.utils.http_utils import create_httpx_client, open_stream

logger = logging.getLogger(__name__)


@runtime_checkable
class MediaSource(Protocol):
    """
    Protocol for streaming media bytes.

    Implementations must provide:
    - stream(): async iterator of bytes, ending with the input
    - name: human-readable identity for logging
    """

    @property
    def name(self) -> str:
        """Human-readable source identity."""
        ...

    def stream(self) -> AsyncIterator[bytes]:
        """
        Stream bytes from the source.

        Yields:
            Chunks of bytes.
        """
        ...


class FileMediaSource:
    """MediaSource backed by a local file, read in fixed-size chunks."""

    def __init__(self, path: str | Path, chunk_size: int | None = None) -> None:
        self._path = Path(path)
        self._chunk_size = chunk_size or settings.read_chunk_size

    @property
    def name(self) -> str:
        return str(self._path)

    async def stream(self) -> AsyncIterator[bytes]:
        with self._path.open("rb") as f:
            while True:
                # Blocking read off the event loop
                chunk = await asyncio.to_thread(f.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk


class HTTPMediaSource:
    """MediaSource backed by a streaming HTTP GET via httpx."""

    def __init__(self, url: str, headers: dict | None = None) -> None:
        self._url = url
        self._headers = {"user-agent": settings.user_agent, **(headers or {})}

    @property
    def name(self) -> str:
        return self._url

    async def stream(self) -> AsyncIterator[bytes]:
        async with create_httpx_client() as client:
            response = await open_stream(client, self._url, self._headers)
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            finally:
                await response.aclose()

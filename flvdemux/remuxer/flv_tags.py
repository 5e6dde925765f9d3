"""
FLV wire format: constants, parsed records and the incremental tag reader.

Layout handled here:

  Header:  "FLV" | version(1) | flags(1) | data_offset(4)
  Loop:    previous_tag_size(4) | tag_type(1) | body_length(3)
           | timestamp(4) | stream_id(3) | body(body_length)

FLVTagReader is a pure state machine. It never touches I/O: the caller asks
how many bytes the next field needs (``needed``), gathers exactly that many,
and hands them to ``feed()``. Completed tags come back from ``feed()``.
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

FLV_SIGNATURE = b"FLV"
FLV_VERSION = 1
FLV_HEADER_SIZE = 9

TAG_TYPE_AUDIO = 0x08
TAG_TYPE_VIDEO = 0x09
TAG_TYPE_METADATA = 0x12

# Header flag bits
FLAG_AUDIO = 0x04
FLAG_VIDEO = 0x01

# SoundFormat values (upper nibble of the first audio body byte)
SOUND_FORMAT_MP3 = 2
SOUND_FORMAT_AAC = 10
SOUND_FORMAT_MP3_8K = 14

# AACPacketType of an AudioSpecificConfig; every other value carries a raw frame
AAC_SEQUENCE_HEADER = 0


# =============================================================================
# Errors
# =============================================================================


class FLVDemuxError(Exception):
    """Base exception for FLV demuxing failures."""


class FLVFormatError(FLVDemuxError):
    """Malformed FLV input. Always fatal: decoding stops and is not retried."""


class BackpressureTimeout(FLVDemuxError):
    """A track consumer did not take a pending item within the ack timeout."""


# =============================================================================
# Parsed records
# =============================================================================


@dataclass(frozen=True, slots=True)
class FLVHeader:
    """The 9-byte FLV file header."""

    version: int
    flags: int
    data_offset: int

    @property
    def has_audio(self) -> bool:
        return bool(self.flags & FLAG_AUDIO)

    @property
    def has_video(self) -> bool:
        return bool(self.flags & FLAG_VIDEO)


@dataclass(slots=True)
class FLVTag:
    """One tag from the tag loop. Lives only until it has been dispatched."""

    tag_type: int
    body_length: int
    timestamp: int
    stream_id: int
    body: bytes = b""

    @property
    def timestamp_ms(self) -> int:
        """
        Timestamp in milliseconds.

        ``timestamp`` holds the four wire bytes as one big-endian u32. On the
        wire those are a 24-bit timestamp followed by its upper 8 extension
        bits, so the millisecond value moves the low byte to the top.
        """
        return ((self.timestamp & 0xFF) << 24) | (self.timestamp >> 8)


@dataclass(frozen=True, slots=True)
class AudioTagHeader:
    """Bitfields of the first audio body byte: format(4) | rate(2) | size(1) | type(1)."""

    sound_format: int
    sound_rate: int  # 0: 5.5 kHz, 1: 11 kHz, 2: 22 kHz, 3: 44 kHz
    sound_size: int  # 0: 8-bit, 1: 16-bit
    sound_type: int  # 0: mono, 1: stereo

    @classmethod
    def parse(cls, value: int) -> "AudioTagHeader":
        return cls(
            sound_format=(value & 0xF0) >> 4,
            sound_rate=(value & 0x0C) >> 2,
            sound_size=(value & 0x02) >> 1,
            sound_type=value & 0x01,
        )

    @property
    def is_aac(self) -> bool:
        return self.sound_format == SOUND_FORMAT_AAC


def read_uint24(data: bytes, pos: int = 0) -> int:
    """Read a big-endian unsigned 24-bit integer."""
    return (data[pos] << 16) | (data[pos + 1] << 8) | data[pos + 2]


# =============================================================================
# State machine
# =============================================================================


class ReaderState(Enum):
    SIGNATURE = "signature"
    VERSION = "version"
    FLAGS = "flags"
    DATA_OFFSET = "data_offset"
    PREVIOUS_TAG_SIZE = "previous_tag_size"
    TAG_TYPE = "tag_type"
    BODY_LENGTH = "body_length"
    TIMESTAMP = "timestamp"
    STREAM_ID = "stream_id"
    BODY = "body"


# Fixed field widths. BODY is variable and comes from the current tag.
_FIELD_SIZES = {
    ReaderState.SIGNATURE: 3,
    ReaderState.VERSION: 1,
    ReaderState.FLAGS: 1,
    ReaderState.DATA_OFFSET: 4,
    ReaderState.PREVIOUS_TAG_SIZE: 4,
    ReaderState.TAG_TYPE: 1,
    ReaderState.BODY_LENGTH: 3,
    ReaderState.TIMESTAMP: 4,
    ReaderState.STREAM_ID: 3,
}


class FLVTagReader:
    """
    Incremental FLV parser.

    Usage:
        reader = FLVTagReader()
        while more input:
            data = <exactly reader.needed bytes>
            tag = reader.feed(data)
            if tag is not None:
                dispatch(tag)

    A FLVFormatError leaves the reader in a failed state; every later
    ``feed()`` raises again.
    """

    def __init__(self) -> None:
        self._state = ReaderState.SIGNATURE
        self._flags = 0
        self._version = 0
        self._tag: FLVTag | None = None
        self._error: FLVFormatError | None = None
        self.header: FLVHeader | None = None
        self.tags_read = 0

    @property
    def state(self) -> ReaderState:
        return self._state

    @property
    def needed(self) -> int:
        """Exact number of bytes the next ``feed()`` call must receive."""
        if self._state is ReaderState.BODY:
            return self._tag.body_length
        return _FIELD_SIZES[self._state]

    @property
    def failed(self) -> bool:
        return self._error is not None

    def feed(self, data: bytes) -> FLVTag | None:
        """
        Consume one field and advance.

        Returns the completed tag after its body has been fed, otherwise None.
        """
        if self._error is not None:
            raise self._error
        if len(data) != self.needed:
            raise ValueError(f"FLV reader in state {self._state.value} needs {self.needed} bytes, got {len(data)}")

        try:
            return self._advance(data)
        except FLVFormatError as e:
            self._error = e
            raise

    def _advance(self, data: bytes) -> FLVTag | None:
        state = self._state

        if state is ReaderState.SIGNATURE:
            if data != FLV_SIGNATURE:
                raise FLVFormatError(f"invalid FLV signature: {data!r}")
            self._state = ReaderState.VERSION

        elif state is ReaderState.VERSION:
            version = data[0]
            if version != FLV_VERSION:
                raise FLVFormatError(f"expected FLV version {FLV_VERSION}, got: {version}")
            self._version = version
            self._state = ReaderState.FLAGS

        elif state is ReaderState.FLAGS:
            self._flags = data[0]
            self._state = ReaderState.DATA_OFFSET

        elif state is ReaderState.DATA_OFFSET:
            (offset,) = struct.unpack(">I", data)
            if offset != FLV_HEADER_SIZE:
                logger.debug("[flv_tags] Unusual FLV data offset %d", offset)
            self.header = FLVHeader(version=self._version, flags=self._flags, data_offset=offset)
            self._state = ReaderState.PREVIOUS_TAG_SIZE

        elif state is ReaderState.PREVIOUS_TAG_SIZE:
            # Informational only, never validated
            self._state = ReaderState.TAG_TYPE

        elif state is ReaderState.TAG_TYPE:
            self._tag = FLVTag(tag_type=data[0], body_length=0, timestamp=0, stream_id=0)
            self._state = ReaderState.BODY_LENGTH

        elif state is ReaderState.BODY_LENGTH:
            self._tag.body_length = read_uint24(data)
            self._state = ReaderState.TIMESTAMP

        elif state is ReaderState.TIMESTAMP:
            (self._tag.timestamp,) = struct.unpack(">I", data)
            self._state = ReaderState.STREAM_ID

        elif state is ReaderState.STREAM_ID:
            self._tag.stream_id = read_uint24(data)
            if self._tag.body_length == 0:
                # Nothing to read or dispatch; go straight to the next tag
                logger.debug("[flv_tags] Skipping empty tag of type 0x%02X", self._tag.tag_type)
                self._tag = None
                self._state = ReaderState.PREVIOUS_TAG_SIZE
            else:
                self._state = ReaderState.BODY

        elif state is ReaderState.BODY:
            tag = self._tag
            tag.body = bytes(data)
            self._tag = None
            self.tags_read += 1
            self._state = ReaderState.PREVIOUS_TAG_SIZE
            return tag

        return None

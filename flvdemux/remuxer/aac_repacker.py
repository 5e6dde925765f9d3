"""
AAC repacking for FLV audio tags.

FLV carries AAC as bare raw_data_blocks plus a one-off AudioSpecificConfig
(the "sequence header"). Raw frames have no self-framing, so each one is
emitted behind a synthesized 7-byte ADTS header built from the stored config.
"""

import logging
from dataclasses import dataclass

from flvdemux.remuxer.flv_tags import AAC_SEQUENCE_HEADER, FLVFormatError

logger = logging.getLogger(__name__)

ADTS_HEADER_SIZE = 7

# frame_length is a 13-bit field and includes the header itself
ADTS_MAX_FRAME_LENGTH = 0x1FFF

# Variable bitrate marker
ADTS_BUFFER_FULLNESS = 0x7FF

# AAC sample rate index table
AAC_SAMPLE_RATES = [96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050, 16000, 12000, 11025, 8000, 7350, 0, 0, 0]


@dataclass
class AACCodecState:
    """Decode parameters captured from the AudioSpecificConfig of one track."""

    profile: int | None = None  # audio object type - 1 (0=Main, 1=LC, 2=SSR, 3=LTP)
    sampling_frequency_index: int | None = None
    channel_configuration: int | None = None

    @property
    def configured(self) -> bool:
        return self.profile is not None

    @property
    def sample_rate(self) -> int:
        if self.sampling_frequency_index is None:
            return 0
        return AAC_SAMPLE_RATES[self.sampling_frequency_index]


def parse_audio_specific_config(config: bytes) -> AACCodecState:
    """
    Read profile, sampling index and channel layout from an AudioSpecificConfig.

    Bit layout (ISO/IEC 14496-3), MSB first:
      audioObjectType(5) | samplingFrequencyIndex(4) | channelConfiguration(4)
    """
    if len(config) < 2:
        raise FLVFormatError(f"AAC sequence header too short: {len(config)} bytes")

    bits = (config[0] << 8) | config[1]
    return AACCodecState(
        profile=(bits >> 11) - 1,
        sampling_frequency_index=(bits >> 7) & 0x0F,
        channel_configuration=(bits >> 3) & 0x0F,
    )


def make_adts_header(payload_length: int, profile: int, sampling_frequency_index: int, channel_configuration: int) -> bytes:
    """
    Build the 7-byte ADTS header for a raw AAC frame.

    Args:
        payload_length: Length of the raw AAC frame (without header)
        profile: ADTS profile (audio object type - 1)
        sampling_frequency_index: 4-bit sampling frequency index
        channel_configuration: 3-bit channel configuration

    Returns:
        7-byte ADTS header
    """
    frame_length = payload_length + ADTS_HEADER_SIZE
    if frame_length > ADTS_MAX_FRAME_LENGTH:
        raise FLVFormatError(f"AAC frame of {payload_length} bytes does not fit an ADTS header")

    header = bytearray(ADTS_HEADER_SIZE)

    # Syncword 0xFFF | ID 0 (MPEG-4) | layer 00 | protection_absent 1
    header[0] = 0xFF
    header[1] = 0xF1

    # profile(2) | sampling_frequency_index(4) | private(1) | channel_config high bit(1)
    header[2] = (
        ((profile & 0x03) << 6) | ((sampling_frequency_index & 0x0F) << 2) | ((channel_configuration >> 2) & 0x01)
    )

    # channel_config low bits(2) | original/copy, home, copyright id bit, copyright start (all 0) | frame_length high(2)
    header[3] = ((channel_configuration & 0x03) << 6) | ((frame_length >> 11) & 0x03)

    # frame_length middle 8 bits
    header[4] = (frame_length >> 3) & 0xFF

    # frame_length low(3) | buffer_fullness high(5)
    header[5] = ((frame_length & 0x07) << 5) | ((ADTS_BUFFER_FULLNESS >> 6) & 0x1F)

    # buffer_fullness low(6) | number_of_raw_data_blocks_minus_one(2) = 0
    header[6] = (ADTS_BUFFER_FULLNESS & 0x3F) << 2

    return bytes(header)


class AACRepacker:
    """
    Per-track AAC state plus the FLV -> ADTS transform.

    ``feed()`` returns the items to deliver, in order: nothing for a
    sequence header, ``[adts_header, payload]`` for a raw frame.
    """

    def __init__(self) -> None:
        self.state = AACCodecState()
        self.frames = 0

    def feed(self, packet_type: int, payload: bytes) -> list[bytes]:
        if packet_type == AAC_SEQUENCE_HEADER:
            state = parse_audio_specific_config(payload)
            if self.state.configured and state != self.state:
                logger.info("[aac_repacker] AudioSpecificConfig changed mid-stream: %s -> %s", self.state, state)
            self.state = state
            logger.debug(
                "[aac_repacker] Sequence header: profile=%d sampling_index=%d (%d Hz) channels=%d",
                state.profile,
                state.sampling_frequency_index,
                state.sample_rate,
                state.channel_configuration,
            )
            return []

        # Any other packet type is treated as a raw frame
        if not self.state.configured:
            raise FLVFormatError("raw AAC frame received before the AAC sequence header")

        header = make_adts_header(
            len(payload),
            self.state.profile,
            self.state.sampling_frequency_index,
            self.state.channel_configuration,
        )
        self.frames += 1
        return [header, payload]

import struct
from datetime import datetime, timezone

import pytest

from flvdemux.remuxer.amf0 import MAX_DEPTH, AMFCursor, AMFDecodeError, decode
from flv_samples import amf_bool, amf_ecma_array, amf_number, amf_object, amf_string


def test_decode_advances_cursor_one_value_at_a_time():
    data = amf_string("onMetaData") + amf_number(6.0)
    cursor = AMFCursor()

    assert decode(data, cursor) == "onMetaData"
    assert cursor.offset == 13
    assert decode(data, cursor) == 6.0
    assert cursor.offset == len(data)


def test_decode_scalars():
    assert decode(amf_bool(True), AMFCursor()) is True
    assert decode(amf_bool(False), AMFCursor()) is False
    assert decode(b"\x05", AMFCursor()) is None
    assert decode(b"\x06", AMFCursor()) is None
    assert decode(amf_string("héllo"), AMFCursor()) == "héllo"


def test_decode_long_string():
    raw = b"x" * 70000
    data = b"\x0c" + struct.pack(">I", len(raw)) + raw
    assert decode(data, AMFCursor()) == raw.decode()


def test_decode_ecma_array():
    data = amf_ecma_array(
        {
            "duration": amf_number(6),
            "width": amf_number(360),
            "canSeekToEnd": amf_bool(True),
            "encoder": amf_string("Lavf"),
        }
    )
    cursor = AMFCursor()
    assert decode(data, cursor) == {"duration": 6.0, "width": 360.0, "canSeekToEnd": True, "encoder": "Lavf"}
    assert cursor.offset == len(data)


def test_decode_nested_object_and_strict_array():
    keyframes = b"\x0a" + struct.pack(">I", 2) + amf_number(0) + amf_number(2.5)
    data = amf_object({"keyframes": amf_object({"times": keyframes}), "empty": amf_object({})})
    assert decode(data, AMFCursor()) == {"keyframes": {"times": [0.0, 2.5]}, "empty": {}}


def test_decode_typed_object():
    data = b"\x10" + struct.pack(">H", 3) + b"Foo" + amf_object({"a": amf_number(1)})[1:]
    assert decode(data, AMFCursor()) == {"a": 1.0}


def test_decode_date():
    data = b"\x0b" + struct.pack(">d", 86_400_000.0) + b"\x00\x00"
    assert decode(data, AMFCursor()) == datetime(1970, 1, 2, tzinfo=timezone.utc)


def test_truncated_value_raises():
    with pytest.raises(AMFDecodeError):
        decode(amf_string("onMetaData")[:-2], AMFCursor())
    with pytest.raises(AMFDecodeError):
        decode(b"", AMFCursor())


def test_unterminated_object_raises():
    data = b"\x03" + struct.pack(">H", 1) + b"a" + amf_number(1)
    with pytest.raises(AMFDecodeError):
        decode(data, AMFCursor())


def test_unsupported_marker_raises():
    with pytest.raises(AMFDecodeError, match="0x07"):
        decode(b"\x07\x00\x01", AMFCursor())


def test_nesting_limit():
    nested = b"\x0a\x00\x00\x00\x01" * MAX_DEPTH + b"\x05"
    value = decode(nested, AMFCursor())
    for _ in range(MAX_DEPTH):
        value = value[0]
    assert value is None

    cursor = AMFCursor()
    with pytest.raises(AMFDecodeError, match="nesting"):
        decode(b"\x0a\x00\x00\x00\x01" * 5000 + b"\x05", cursor)
    assert cursor.depth == 0


def test_nesting_limit_counts_objects():
    data = b"\x05"
    for _ in range(MAX_DEPTH + 1):
        data = amf_object({"child": data})
    with pytest.raises(AMFDecodeError, match="nesting"):
        decode(data, AMFCursor())

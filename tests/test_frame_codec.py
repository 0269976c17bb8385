"""
Tests for the channel frame codec.
"""

import pytest

from webrtc_gateway.errors import IncompleteFrame, ProtocolError
from webrtc_gateway.transport.frame_codec import (
    OPCODE_BINARY,
    OPCODE_CLOSE,
    OPCODE_PING,
    OPCODE_TEXT,
    apply_mask,
    decode_frame,
    encode_frame,
    encode_masked_frame,
    header_length,
)


def test_encode_short_text():
    """A 5-byte text payload uses the inline length class."""
    assert encode_frame("hello") == b"\x81\x05hello"


def test_encode_length_classes():
    """The smallest length class that fits is chosen."""
    assert encode_frame(b"a" * 125)[:2] == b"\x81\x7d"
    assert encode_frame(b"a" * 126)[:4] == b"\x81\x7e\x00\x7e"
    assert encode_frame(b"a" * 65535)[:4] == b"\x81\x7e\xff\xff"
    assert encode_frame(b"a" * 65536)[:10] == b"\x81\x7f\x00\x00\x00\x00\x00\x01\x00\x00"


@pytest.mark.parametrize("length", [0, 1, 125, 126, 65535, 65536, 70000])
def test_encode_then_decode(length):
    payload = bytes(i % 251 for i in range(length))
    encoded = encode_frame(payload, OPCODE_BINARY)

    frame = decode_frame(encoded)

    assert frame.fin
    assert frame.opcode == OPCODE_BINARY
    assert not frame.masked
    assert frame.payload == payload
    assert frame.size == len(encoded)


def test_decode_masked_client_frame():
    """Masked payload bytes are XORed with the cycling 4-byte key."""
    mask = bytes([0x01, 0x02, 0x03, 0x04])
    masked_payload = bytes(b ^ mask[i % 4] for i, b in enumerate(b"abc"))
    data = bytes([0x81, 0x83]) + mask + masked_payload

    frame = decode_frame(data)

    assert frame.opcode == OPCODE_TEXT
    assert frame.masked
    assert frame.payload == b"abc"
    assert frame.size == len(data)


def test_decode_leaves_trailing_bytes():
    data = encode_frame("first") + encode_frame("second")

    first = decode_frame(data)
    second = decode_frame(data[first.size:])

    assert first.payload == b"first"
    assert second.payload == b"second"


def test_incomplete_header():
    with pytest.raises(IncompleteFrame):
        decode_frame(b"")
    with pytest.raises(IncompleteFrame):
        decode_frame(b"\x81")
    # 16-bit length announced but missing
    with pytest.raises(IncompleteFrame):
        decode_frame(b"\x81\x7e\x00")
    # Mask bit set but key missing
    with pytest.raises(IncompleteFrame):
        decode_frame(b"\x81\x85\x01\x02")


def test_incomplete_payload():
    encoded = encode_frame(b"x" * 300)
    with pytest.raises(IncompleteFrame):
        decode_frame(encoded[:-1])


def test_incomplete_frame_is_protocol_error():
    """Callers catching ProtocolError also see short buffers."""
    with pytest.raises(ProtocolError):
        decode_frame(b"\x81")


def test_header_length():
    assert header_length(b"\x81\x05") == 2
    assert header_length(b"\x81\x7e") == 4
    assert header_length(b"\x81\x7f") == 10
    assert header_length(b"\x81\xfe") == 8
    assert header_length(b"\x81\xff") == 14


def test_fin_clear_is_reported():
    frame = decode_frame(b"\x01\x03abc")
    assert not frame.fin
    assert frame.opcode == OPCODE_TEXT


def test_control_frames():
    frame = decode_frame(encode_frame(b"\x03\xe8", OPCODE_CLOSE))
    assert frame.is_control
    assert frame.opcode == OPCODE_CLOSE
    assert frame.payload == b"\x03\xe8"

    assert decode_frame(encode_frame(b"", OPCODE_PING)).is_control
    assert not decode_frame(encode_frame(b"data")).is_control


def test_masked_encode_decodes_to_original():
    mask = b"\x37\xfa\x21\x3d"
    data = encode_masked_frame('{"type": "request-offer"}', mask)

    assert data[1] & 0x80
    assert data[2:6] == mask
    assert decode_frame(data).payload == b'{"type": "request-offer"}'


def test_masked_encode_rejects_bad_key():
    with pytest.raises(ValueError):
        encode_masked_frame(b"abc", b"\x01\x02")


def test_apply_mask_is_an_involution():
    mask = b"\x01\x02\x03\x04"
    payload = b"signaling payload of odd length"
    assert apply_mask(apply_mask(payload, mask), mask) == payload
    assert apply_mask(b"", mask) == b""

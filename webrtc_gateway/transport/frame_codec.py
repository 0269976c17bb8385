"""
Frame Codec for the WebRTC Gateway.

Stateless encode/decode of the bidirectional-channel (WebSocket) wire frame.
Only complete, unfragmented frames are understood; fragment reassembly is
not supported and is rejected by the connection reader.
"""

import struct
from dataclasses import dataclass

from webrtc_gateway.errors import IncompleteFrame

# Opcodes
OPCODE_CONTINUATION = 0x0
OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

FIN_BIT = 0x80
MASK_BIT = 0x80

# Length classes
MAX_INLINE_LENGTH = 125
LENGTH_16BIT_MARKER = 126
LENGTH_64BIT_MARKER = 127
MAX_16BIT_LENGTH = 0xFFFF

MASK_KEY_SIZE = 4


@dataclass
class WireFrame:
    """One decoded frame of the bidirectional channel."""

    opcode: int
    fin: bool
    masked: bool
    payload: bytes
    size: int  # bytes consumed from the input buffer, header included

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def is_control(self) -> bool:
        return self.opcode >= OPCODE_CLOSE


def header_length(data: bytes) -> int:
    """
    Return the header size implied by the first two bytes of *data*.

    Raises:
        IncompleteFrame: if fewer than two bytes are available
    """
    if len(data) < 2:
        raise IncompleteFrame(f"Need at least 2 header bytes, have {len(data)}")

    length_field = data[1] & 0x7F
    size = 2
    if length_field == LENGTH_16BIT_MARKER:
        size += 2
    elif length_field == LENGTH_64BIT_MARKER:
        size += 8
    if data[1] & MASK_BIT:
        size += MASK_KEY_SIZE
    return size


def apply_mask(payload: bytes, mask_key: bytes) -> bytes:
    """XOR *payload* against the 4-byte *mask_key*, cycling every 4 bytes."""
    if not payload:
        return b""
    # Repeat the key over the whole payload and XOR as big integers
    repeats, remainder = divmod(len(payload), MASK_KEY_SIZE)
    key_stream = mask_key * repeats + mask_key[:remainder]
    unmasked = int.from_bytes(payload, "big") ^ int.from_bytes(key_stream, "big")
    return unmasked.to_bytes(len(payload), "big")


def decode_frame(data: bytes) -> WireFrame:
    """
    Decode the frame at the start of *data*.

    Trailing bytes after the frame are left alone; ``WireFrame.size`` tells
    the caller how much of the buffer was consumed.

    Args:
        data: Raw bytes read from the transport

    Returns:
        WireFrame with the unmasked payload

    Raises:
        IncompleteFrame: if the buffer is shorter than the header, or shorter
            than header plus payload
    """
    header_size = header_length(data)
    if len(data) < header_size:
        raise IncompleteFrame(
            f"Need {header_size} header bytes, have {len(data)}")

    fin = bool(data[0] & FIN_BIT)
    opcode = data[0] & 0x0F
    masked = bool(data[1] & MASK_BIT)

    length_field = data[1] & 0x7F
    offset = 2
    if length_field == LENGTH_16BIT_MARKER:
        (payload_length,) = struct.unpack_from(">H", data, offset)
        offset += 2
    elif length_field == LENGTH_64BIT_MARKER:
        (payload_length,) = struct.unpack_from(">Q", data, offset)
        offset += 8
    else:
        payload_length = length_field

    mask_key = b""
    if masked:
        mask_key = bytes(data[offset:offset + MASK_KEY_SIZE])
        offset += MASK_KEY_SIZE

    frame_size = offset + payload_length
    if len(data) < frame_size:
        raise IncompleteFrame(
            f"Need {frame_size} bytes for frame, have {len(data)}")

    payload = bytes(data[offset:frame_size])
    if masked:
        payload = apply_mask(payload, mask_key)

    return WireFrame(
        opcode=opcode,
        fin=fin,
        masked=masked,
        payload=payload,
        size=frame_size,
    )


def encode_frame(payload, opcode: int = OPCODE_TEXT) -> bytes:
    """
    Encode *payload* as a single, final, unmasked frame.

    The smallest length class that fits is chosen. Text payloads may be
    given as ``str`` and are UTF-8 encoded.

    Args:
        payload: Message body (bytes or str)
        opcode: Frame opcode, text unless a control reply is being sent

    Returns:
        The framed bytes ready for the transport
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    payload = bytes(payload)
    length = len(payload)

    first = FIN_BIT | (opcode & 0x0F)
    if length <= MAX_INLINE_LENGTH:
        header = struct.pack(">BB", first, length)
    elif length <= MAX_16BIT_LENGTH:
        header = struct.pack(">BBH", first, LENGTH_16BIT_MARKER, length)
    else:
        header = struct.pack(">BBQ", first, LENGTH_64BIT_MARKER, length)

    return header + payload


def encode_masked_frame(payload, mask_key: bytes, opcode: int = OPCODE_TEXT) -> bytes:
    """
    Encode *payload* the way a browser does, masked with *mask_key*.

    The gateway never sends masked frames; this is used by clients and tests
    that need to speak the client side of the channel.
    """
    if len(mask_key) != MASK_KEY_SIZE:
        raise ValueError(f"Mask key must be {MASK_KEY_SIZE} bytes, got {len(mask_key)}")
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    plain = encode_frame(payload, opcode)
    header_size = len(plain) - len(payload)
    header = bytearray(plain[:header_size])
    header[1] |= MASK_BIT
    return bytes(header) + mask_key + apply_mask(bytes(payload), mask_key)

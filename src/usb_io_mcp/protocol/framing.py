"""Binary encoding of protocol messages for 16-byte USB bulk transfers.

Frame layout::

    +-----+-----------------------------------------+
    | Tag |             Fields (by tag)             |
    | 1 B |  0-11 bytes, in declaration order       |
    +-----+-----------------------------------------+

    Ping/Pong/Ack/Nop   tag only
    Data                tag | width | value
    Set                 tag | address | width | value
    Get                 tag | address | width

- Width: 0 = U8, 1 = U16, 2 = U32
- Value: U8 as one raw byte; U16 and U32 as unsigned LEB128 varints
- Address: unsigned LEB128 varint, at most 5 bytes

There is no length prefix: the tag implies the shape. A frame never
exceeds ``MESSAGE_MAX_SIZE`` bytes.
"""

from __future__ import annotations

from ..errors import DecodeError
from .messages import (
    EMPTY_MESSAGES,
    U32_MAX,
    Data,
    DataMessage,
    DataSize,
    Get,
    Message,
    Set,
    Tag,
)

MESSAGE_MAX_SIZE = 16

# Longest varint encoding for each value range
_VARINT_MAX_BYTES = {0xFFFF: 3, U32_MAX: 5}


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, offset: int, max_value: int) -> tuple[int, int]:
    """Decode an unsigned LEB128 varint bounded by ``max_value``.

    Returns:
        ``(value, next_offset)``.
    """
    value = 0
    for i in range(_VARINT_MAX_BYTES[max_value]):
        if offset + i >= len(data):
            raise DecodeError("Truncated varint")
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            if value > max_value:
                raise DecodeError(f"Varint {value:#x} exceeds {max_value:#x}")
            return value, offset + i + 1
    raise DecodeError("Varint too long")


def _encode_data(data: Data) -> bytes:
    if data.size == DataSize.U8:
        return bytes([data.size, data.value])
    return bytes([data.size]) + _encode_varint(data.value)


def _decode_size(data: bytes, offset: int) -> tuple[DataSize, int]:
    if offset >= len(data):
        raise DecodeError("Truncated data size")
    try:
        return DataSize(data[offset]), offset + 1
    except ValueError:
        raise DecodeError(f"Unknown data size tag {data[offset]}") from None


def _decode_data(data: bytes, offset: int) -> tuple[Data, int]:
    size, offset = _decode_size(data, offset)
    if size == DataSize.U8:
        if offset >= len(data):
            raise DecodeError("Truncated U8 value")
        return Data(size, data[offset]), offset + 1
    value, offset = _decode_varint(data, offset, size.max_value)
    return Data(size, value), offset


def encode_message(message: Message) -> bytes:
    """Encode a message into a frame of at most ``MESSAGE_MAX_SIZE`` bytes."""
    frame = bytes([message.TAG])
    if isinstance(message, DataMessage):
        frame += _encode_data(message.data)
    elif isinstance(message, Set):
        frame += _encode_varint(message.address) + _encode_data(message.data)
    elif isinstance(message, Get):
        frame += _encode_varint(message.address) + bytes([message.size])
    assert len(frame) <= MESSAGE_MAX_SIZE, f"{message!r} encodes to {len(frame)} bytes"
    return frame


def take_message(data: bytes) -> tuple[Message, bytes]:
    """Decode one message from the front of ``data``.

    Returns:
        ``(message, remainder)`` where ``remainder`` is the unused tail.

    Raises:
        DecodeError: If the tag is unknown or the payload is truncated.
    """
    data = bytes(data)
    if not data:
        raise DecodeError("Empty frame")

    try:
        tag = Tag(data[0])
    except ValueError:
        raise DecodeError(f"Unknown message tag {data[0]}") from None

    offset = 1
    if tag in EMPTY_MESSAGES:
        message: Message = EMPTY_MESSAGES[tag]()
    elif tag == Tag.DATA:
        value, offset = _decode_data(data, offset)
        message = DataMessage(value)
    elif tag == Tag.SET:
        address, offset = _decode_varint(data, offset, U32_MAX)
        value, offset = _decode_data(data, offset)
        message = Set(address, value)
    else:
        address, offset = _decode_varint(data, offset, U32_MAX)
        size, offset = _decode_size(data, offset)
        message = Get(address, size)

    return message, data[offset:]


def decode_message(data: bytes) -> Message:
    """Decode a frame holding exactly one message.

    Raises:
        DecodeError: On an unknown tag, truncated payload or trailing bytes.
    """
    message, rest = take_message(data)
    if rest:
        raise DecodeError(f"{len(rest)} trailing byte(s) after {message!r}")
    return message


def decode_padded(buffer: bytes) -> Message:
    """Decode a message from a fixed-size buffer, ignoring unused trailing bytes."""
    message, _ = take_message(buffer)
    return message

"""Message vocabulary shared by the host and the device.

Each message variant is identified by a single-byte tag. Tag values and
field order are part of the wire protocol and must match on both ends.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Union

U32_MAX = 0xFFFFFFFF


class Tag(IntEnum):
    """Message variant identifiers."""

    PING = 0
    PONG = 1
    ACK = 2
    DATA = 3
    SET = 4
    GET = 5
    NOP = 6


class DataSize(IntEnum):
    """Access width selector for a ``Get``."""

    U8 = 0
    U16 = 1
    U32 = 2

    @property
    def bits(self) -> int:
        return 8 << self.value

    @property
    def num_bytes(self) -> int:
        return 1 << self.value

    @property
    def max_value(self) -> int:
        return (1 << self.bits) - 1

    @classmethod
    def from_bits(cls, bits: int) -> DataSize:
        """Map a bit width (8, 16 or 32) to a ``DataSize``."""
        for size in cls:
            if size.bits == bits:
                return size
        raise ValueError(f"Width must be 8, 16 or 32 bits, got {bits}")


@dataclass(frozen=True)
class Data:
    """A value of a given width, carried by a write or returned by a read."""

    size: DataSize
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "size", DataSize(self.size))
        if not 0 <= self.value <= self.size.max_value:
            raise ValueError(
                f"{self.size.name} value must be 0-{self.size.max_value:#x}, "
                f"got {self.value:#x}"
            )

    @classmethod
    def u8(cls, value: int) -> Data:
        return cls(DataSize.U8, value)

    @classmethod
    def u16(cls, value: int) -> Data:
        return cls(DataSize.U16, value)

    @classmethod
    def u32(cls, value: int) -> Data:
        return cls(DataSize.U32, value)

    def __repr__(self) -> str:
        digits = self.size.num_bytes * 2
        return f"Data.{self.size.name.lower()}(0x{self.value:0{digits}X})"


def _check_address(address: int) -> None:
    if not 0 <= address <= U32_MAX:
        raise ValueError(f"Address must fit in 32 bits, got {address:#x}")


@dataclass(frozen=True)
class Message:
    """Base class of every wire message."""

    TAG: ClassVar[Tag]


@dataclass(frozen=True)
class Ping(Message):
    """Liveness probe."""

    TAG: ClassVar[Tag] = Tag.PING


@dataclass(frozen=True)
class Pong(Message):
    """Answer to ``Ping``."""

    TAG: ClassVar[Tag] = Tag.PONG


@dataclass(frozen=True)
class Ack(Message):
    """Acknowledges a completed write."""

    TAG: ClassVar[Tag] = Tag.ACK


@dataclass(frozen=True)
class DataMessage(Message):
    """Value returned by a read."""

    TAG: ClassVar[Tag] = Tag.DATA

    data: Data


@dataclass(frozen=True)
class Set(Message):
    """Write ``data`` to ``address``."""

    TAG: ClassVar[Tag] = Tag.SET

    address: int
    data: Data

    def __post_init__(self) -> None:
        _check_address(self.address)

    def __repr__(self) -> str:
        return f"Set(address=0x{self.address:08X}, data={self.data!r})"


@dataclass(frozen=True)
class Get(Message):
    """Read ``size`` bytes from ``address``."""

    TAG: ClassVar[Tag] = Tag.GET

    address: int
    size: DataSize

    def __post_init__(self) -> None:
        _check_address(self.address)
        object.__setattr__(self, "size", DataSize(self.size))

    def __repr__(self) -> str:
        return f"Get(address=0x{self.address:08X}, size={self.size.name})"


@dataclass(frozen=True)
class Nop(Message):
    """No operation, used for coverage and throughput probing."""

    TAG: ClassVar[Tag] = Tag.NOP


AnyMessage = Union[Ping, Pong, Ack, DataMessage, Set, Get, Nop]

# Variants without a payload, keyed by tag
EMPTY_MESSAGES: dict[Tag, type[Message]] = {
    Tag.PING: Ping,
    Tag.PONG: Pong,
    Tag.ACK: Ack,
    Tag.NOP: Nop,
}

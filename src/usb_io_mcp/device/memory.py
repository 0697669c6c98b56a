"""Register accessors used by the device dispatcher.

The dispatcher never touches memory itself; it is handed a
``RegisterAccessor`` at construction. ``UnsafeMemoryAccessor`` performs
real volatile access to the process address space, ``SimulatedMemory``
backs the loopback device and the tests.
"""

from __future__ import annotations

import ctypes
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..protocol.messages import Data, DataSize

logger = logging.getLogger(__name__)

_CTYPES = {
    DataSize.U8: ctypes.c_uint8,
    DataSize.U16: ctypes.c_uint16,
    DataSize.U32: ctypes.c_uint32,
}


class RegisterAccessor(ABC):
    """Capability to perform one width-sized access at a raw address."""

    @abstractmethod
    def read(self, address: int, size: DataSize) -> int:
        """Read a ``size``-wide value from ``address``."""

    @abstractmethod
    def write(self, address: int, data: Data) -> None:
        """Write ``data`` to ``address`` with a single access of its width."""


class UnsafeMemoryAccessor(RegisterAccessor):
    """Volatile access to this process's address space through ctypes.

    No address validation is performed. An unmapped or misaligned address
    crashes the interpreter; only use this on targets where the register
    map is mapped into the running process.
    """

    def read(self, address: int, size: DataSize) -> int:
        return _CTYPES[size].from_address(address).value

    def write(self, address: int, data: Data) -> None:
        _CTYPES[data.size].from_address(address).value = data.value


@dataclass
class Access:
    """One recorded register access."""

    op: str
    address: int
    size: DataSize
    value: int


@dataclass
class SimulatedMemory(RegisterAccessor):
    """Sparse little-endian byte-addressed memory.

    Unwritten bytes read as ``fill``. Every access is appended to ``log``.
    """

    fill: int = 0
    cells: dict[int, int] = field(default_factory=dict)
    log: list[Access] = field(default_factory=list)

    def read(self, address: int, size: DataSize) -> int:
        raw = bytes(
            self.cells.get(address + i, self.fill) for i in range(size.num_bytes)
        )
        value = int.from_bytes(raw, "little")
        self.log.append(Access("read", address, size, value))
        logger.debug("read%d [0x%08X] -> 0x%X", size.bits, address, value)
        return value

    def write(self, address: int, data: Data) -> None:
        raw = data.value.to_bytes(data.size.num_bytes, "little")
        for i, byte in enumerate(raw):
            self.cells[address + i] = byte
        self.log.append(Access("write", address, data.size, data.value))
        logger.debug("write%d [0x%08X] <- 0x%X", data.size.bits, address, data.value)

    def load(self, address: int, blob: bytes) -> None:
        """Preload raw bytes starting at ``address`` without logging."""
        for i, byte in enumerate(blob):
            self.cells[address + i] = byte

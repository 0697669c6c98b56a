"""Addressable-memory view of a remote device.

Application code written against ``MemoryInterface`` pokes registers
without knowing anything about USB::

    def enable_gpioc(mem: MemoryInterface) -> None:
        mem.modify32(RCC_AHB1ENR, set_bits=1 << 2)

The ``try_*`` primitives raise a typed ``UsbIoError`` the caller must
handle. The plain ``read*``/``write*`` wrappers turn any such error into a
``MemoryAccessFault`` that aborts the whole operation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .errors import MemoryAccessFault, UsbIoError
from .protocol.messages import U32_MAX, Data, DataSize


class MemoryInterface(ABC):
    """8/16/32-bit register access at 32-bit addresses."""

    @abstractmethod
    def try_read8(self, address: int) -> int: ...

    @abstractmethod
    def try_read16(self, address: int) -> int: ...

    @abstractmethod
    def try_read32(self, address: int) -> int: ...

    @abstractmethod
    def try_write8(self, address: int, value: int) -> None: ...

    @abstractmethod
    def try_write16(self, address: int, value: int) -> None: ...

    @abstractmethod
    def try_write32(self, address: int, value: int) -> None: ...

    def try_read(self, address: int, size: DataSize) -> int:
        """Read with the width chosen at runtime."""
        readers = {
            DataSize.U8: self.try_read8,
            DataSize.U16: self.try_read16,
            DataSize.U32: self.try_read32,
        }
        return readers[DataSize(size)](address)

    def try_write(self, address: int, data: Data) -> None:
        """Write with the width carried by ``data``."""
        writers = {
            DataSize.U8: self.try_write8,
            DataSize.U16: self.try_write16,
            DataSize.U32: self.try_write32,
        }
        writers[data.size](address, data.value)

    def _fatal(self, op, address: int, *args):
        try:
            return op(address, *args)
        except UsbIoError as e:
            raise MemoryAccessFault(
                f"{op.__name__} at 0x{address:08X} failed: {e}"
            ) from e

    def read8(self, address: int) -> int:
        return self._fatal(self.try_read8, address)

    def read16(self, address: int) -> int:
        return self._fatal(self.try_read16, address)

    def read32(self, address: int) -> int:
        return self._fatal(self.try_read32, address)

    def write8(self, address: int, value: int) -> None:
        self._fatal(self.try_write8, address, value)

    def write16(self, address: int, value: int) -> None:
        self._fatal(self.try_write16, address, value)

    def write32(self, address: int, value: int) -> None:
        self._fatal(self.try_write32, address, value)

    def try_modify32(self, address: int, set_bits: int = 0, clear_bits: int = 0) -> int:
        """Read-modify-write a 32-bit register.

        This is two separate transactions and is not atomic: the register
        may change between the read and the write. ``clear_bits`` is applied
        before ``set_bits``.

        Returns:
            The value written.
        """
        value = self.try_read32(address)
        value = ((value & ~clear_bits) | set_bits) & U32_MAX
        self.try_write32(address, value)
        return value

    def modify32(self, address: int, set_bits: int = 0, clear_bits: int = 0) -> int:
        return self._fatal(self.try_modify32, address, set_bits, clear_bits)

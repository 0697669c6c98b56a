"""Device side: command dispatcher, register accessors, and a loopback simulator."""

from .dispatcher import DispatcherState, UsbIoClass
from .memory import RegisterAccessor, SimulatedMemory, UnsafeMemoryAccessor

"""USB-IO: remote memory-mapped register access over USB bulk transfers."""

from .errors import DecodeError, MemoryAccessFault, TransportError, UsbIoError
from .memory import MemoryInterface
from .transport.usb_connection import DeviceInfo, USBConnection, find_devices

__version__ = "0.1.0"

"""Host transport: USB bulk connection and device discovery."""

from .usb_connection import DeviceInfo, USBConnection, find_devices

"""In-process simulated USB-IO device.

``LoopbackDevice`` runs a real ``UsbIoClass`` behind a handle with the
same ``write``/``read`` signature as a pyusb ``usb.core.Device``, so a
``USBConnection`` can be attached to it without hardware. Errors are raised
as the pyusb exceptions libusb would produce.
"""

from __future__ import annotations

import errno
import logging
import threading
from array import array

import usb.core

from ..protocol.framing import MESSAGE_MAX_SIZE, encode_message
from ..protocol.messages import Message, Ping
from .dispatcher import UsbIoClass
from .memory import RegisterAccessor, SimulatedMemory

logger = logging.getLogger(__name__)

EP_OUT = 0x01
EP_IN = 0x81


class BulkEndpoint:
    """Single-frame bulk endpoint buffer with a stall flag."""

    def __init__(self, address: int, max_packet_size: int = MESSAGE_MAX_SIZE) -> None:
        self.address = address
        self.max_packet_size = max_packet_size
        self.stalled = False
        self._frame: bytes | None = None

    @property
    def pending(self) -> bool:
        return self._frame is not None

    def put(self, data: bytes) -> None:
        self._frame = bytes(data)

    @property
    def pending_size(self) -> int:
        return len(self._frame) if self._frame is not None else 0

    def take(self) -> bytes | None:
        frame, self._frame = self._frame, None
        return frame

    # OutEndpoint / InEndpoint protocol

    def read(self) -> bytes:
        return self.take() or b""

    def write(self, data: bytes) -> int:
        self.put(data)
        return len(data)

    def stall(self) -> None:
        self.stalled = True

    def unstall(self) -> None:
        self.stalled = False


class LoopbackDevice:
    """Simulated device exposing a pyusb-shaped bulk handle.

    Usage::

        device = LoopbackDevice()
        conn = USBConnection()
        conn.attach(device)
        conn.write32(0x40021830, 0x4)
    """

    def __init__(self, accessor: RegisterAccessor | None = None) -> None:
        self.memory = accessor if accessor is not None else SimulatedMemory()
        self.out_endpoint = BulkEndpoint(EP_OUT)
        self.in_endpoint = BulkEndpoint(EP_IN)
        self.usb_class = UsbIoClass(self.memory, self.out_endpoint, self.in_endpoint)
        self._io_errors = 0
        self._lock = threading.Lock()

    def inject_io_errors(self, count: int) -> None:
        """Make the next ``count`` IN reads fail with a transient I/O error."""
        self._io_errors = count

    def abandon_request(self, request: Message | None = None) -> None:
        """Run ``request`` and leave its reply unread, like a host that died mid-transaction."""
        self.write(EP_OUT, encode_message(request or Ping()))

    def write(self, endpoint: int, data, timeout: int | None = None) -> int:
        with self._lock:
            if endpoint != self.out_endpoint.address:
                raise usb.core.USBError("Invalid parameter", errno=errno.EINVAL)
            if self.out_endpoint.stalled:
                raise usb.core.USBError("Pipe error", errno=errno.EPIPE)
            data = bytes(data)
            if len(data) > self.out_endpoint.max_packet_size:
                raise usb.core.USBError("Overflow", errno=errno.EOVERFLOW)

            self.out_endpoint.put(data)
            self.usb_class.endpoint_out(self.out_endpoint.address)
            return len(data)

    def read(self, endpoint: int, size: int, timeout: int | None = None) -> array:
        with self._lock:
            if endpoint != self.in_endpoint.address:
                raise usb.core.USBError("Invalid parameter", errno=errno.EINVAL)
            if self._io_errors > 0:
                self._io_errors -= 1
                logger.debug("Injected I/O error on EP 0x%02X (%d left)", endpoint, self._io_errors)
                raise usb.core.USBError("Input/Output Error", errno=errno.EIO)
            if not self.in_endpoint.pending:
                raise usb.core.USBTimeoutError("Operation timed out", errno=errno.ETIMEDOUT)

            if self.in_endpoint.pending_size > size:
                # the reply stays queued for a read with a large enough buffer
                raise usb.core.USBError("Overflow", errno=errno.EOVERFLOW)
            frame = self.in_endpoint.take()
            self.usb_class.endpoint_in_complete(self.in_endpoint.address)
            return array("B", frame)

"""USB bulk connection to a USB-IO device.

The device presents one vendor-specific interface (0) with two bulk
endpoints: 0x01 (OUT, requests) and 0x81 (IN, replies). Every transaction
is one request frame followed by one reply frame; the device refuses a
second request until the reply to the first has been read.
"""

from __future__ import annotations

import errno
import logging
import threading
from dataclasses import dataclass

import usb.core
import usb.util

from ..errors import (
    DeviceNotFoundError,
    LengthMismatchError,
    NoDeviceError,
    NotConnectedError,
    PermissionDeniedError,
    TransferTimeoutError,
    TransientIOError,
    TransportError,
    UsbIoError,
)
from ..memory import MemoryInterface
from ..protocol.framing import MESSAGE_MAX_SIZE, decode_padded, encode_message
from ..protocol.messages import Data, DataSize, Get, Message, Ping, Set
from ..protocol.parser import is_pong, parse_read_reply, parse_write_reply

logger = logging.getLogger(__name__)

VENDOR_ID = 0x16C0
PRODUCT_ID = 0x27DD
INTERFACE = 0
EP_OUT = 0x01
EP_IN = 0x81
DEFAULT_TIMEOUT_MS = 1000
MAX_RECV_RETRIES = 3
# libusb treats a zero timeout as "wait forever"
FLUSH_TIMEOUT_MS = 1


@dataclass
class DeviceInfo:
    """Identification of an attached device from its USB descriptors."""

    vendor_id: int = VENDOR_ID
    product_id: int = PRODUCT_ID
    manufacturer: str = ""
    product: str = ""
    serial_number: str = ""
    bus: int | None = None
    address: int | None = None

    @property
    def product_name(self) -> str:
        return f"{self.manufacturer} {self.product}".strip()

    def __str__(self) -> str:
        return (
            f"USB(bus={self.bus},addr={self.address}): "
            f"{self.product_name or 'USB-IO'} (serial #{self.serial_number})"
        )


def map_usb_error(error: usb.core.USBError, operation: str) -> TransportError:
    """Translate a pyusb error into the USB-IO transport error taxonomy."""
    message = f"{operation}: {error}"
    if isinstance(error, usb.core.USBTimeoutError):
        return TransferTimeoutError(message)
    code = getattr(error, "errno", None)
    if code == errno.EIO:
        return TransientIOError(message)
    if code in (errno.EACCES, errno.EPERM):
        return PermissionDeniedError(message)
    if code in (errno.ENODEV, errno.ENOENT):
        return NoDeviceError(message)
    return TransportError(message)


def _read_string(dev, index: int) -> str:
    if not index:
        return ""
    try:
        return usb.util.get_string(dev, index) or ""
    except (usb.core.USBError, ValueError, NotImplementedError) as e:
        logger.debug("Could not read string descriptor %d: %s", index, e)
        return ""


def _describe(dev) -> DeviceInfo:
    return DeviceInfo(
        vendor_id=dev.idVendor,
        product_id=dev.idProduct,
        manufacturer=_read_string(dev, dev.iManufacturer),
        product=_read_string(dev, dev.iProduct),
        serial_number=_read_string(dev, dev.iSerialNumber),
        bus=dev.bus,
        address=dev.address,
    )


def _find_all(vendor_id: int, product_id: int) -> list:
    try:
        return list(usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id))
    except usb.core.NoBackendError as e:
        raise TransportError(f"No libusb backend available: {e}") from e
    except usb.core.USBError as e:
        raise map_usb_error(e, "enumerate") from e


def find_devices(
    vendor_id: int = VENDOR_ID,
    product_id: int = PRODUCT_ID,
) -> list[DeviceInfo]:
    """Enumerate attached devices matching the vendor/product identifier."""
    logger.debug("Enumerating USB devices %04x:%04x", vendor_id, product_id)
    devices = []
    for dev in _find_all(vendor_id, product_id):
        info = _describe(dev)
        logger.info("Found %s", info)
        devices.append(info)

    if not devices:
        logger.info("No USB-IO devices found")
    return devices


class USBConnection(MemoryInterface):
    """Transaction layer over the device's bulk endpoints.

    All transfers go through one lock. ``request`` holds it for the whole
    write/read pair, so concurrent callers interleave whole transactions.

    Usage::

        with USBConnection() as conn:
            if conn.ready_to_use():
                conn.write32(0x40021830, 0x4)
                value = conn.read32(0x40021830)
    """

    def __init__(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        serial_number: str | None = None,
    ) -> None:
        if timeout_ms <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout_ms} ms")
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._timeout_ms = timeout_ms
        self._serial_number = serial_number
        self._handle = None
        self._owns_usb = False
        self._connected = False
        self._lock = threading.RLock()
        self._device_info = DeviceInfo(vendor_id=vendor_id, product_id=product_id)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    def __enter__(self) -> USBConnection:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ─── Connection lifecycle ─────────────────────────────────────────

    def open(self) -> DeviceInfo:
        """Find, claim and clean up the device.

        Returns:
            DeviceInfo with USB descriptor information.

        Raises:
            DeviceNotFoundError: If no matching device is attached.
            TransportError: If the device cannot be opened or claimed.
        """
        if self._connected:
            return self._device_info

        dev, info = self._find_device()
        try:
            dev.reset()
            self._detach_kernel_driver(dev)
            dev.set_configuration()
            usb.util.claim_interface(dev, INTERFACE)
        except usb.core.USBError as e:
            raise map_usb_error(e, f"open {info}") from e

        self._owns_usb = True
        self.attach(dev, info)
        logger.info("Successfully opened %s", info)
        return info

    def _find_device(self):
        for dev in _find_all(self._vendor_id, self._product_id):
            info = _describe(dev)
            if self._serial_number is None or info.serial_number == self._serial_number:
                return dev, info

        serial = f" with serial #{self._serial_number}" if self._serial_number else ""
        raise DeviceNotFoundError(
            f"Could not find USB-IO device "
            f"({self._vendor_id:#06x}:{self._product_id:#06x}){serial}. "
            f"Ensure the device is connected and you have permissions."
        )

    @staticmethod
    def _detach_kernel_driver(dev) -> None:
        try:
            if dev.is_kernel_driver_active(INTERFACE):
                dev.detach_kernel_driver(INTERFACE)
        except NotImplementedError:
            # not supported on macOS/Windows backends
            pass

    def attach(self, handle, info: DeviceInfo | None = None) -> DeviceInfo:
        """Adopt an already-open bulk handle and bring it to a clean state.

        ``handle`` needs pyusb's ``write(endpoint, data, timeout)`` and
        ``read(endpoint, size, timeout)``. Any reply a previous session
        left in the IN endpoint is drained before the first transaction.
        """
        with self._lock:
            self._handle = handle
            self._connected = True
            if info is not None:
                self._device_info = info

            try:
                self._flush()
            except TransportError:
                self._handle = None
                self._connected = False
                raise
            for _ in range(MAX_RECV_RETRIES):
                try:
                    stale = self.receive()
                except UsbIoError:
                    break
                logger.debug("Drained stale reply %r", stale)
        return self._device_info

    def _flush(self) -> None:
        try:
            self._handle.read(EP_IN, MESSAGE_MAX_SIZE, timeout=FLUSH_TIMEOUT_MS)
        except usb.core.USBTimeoutError:
            pass
        except usb.core.USBError as e:
            raise map_usb_error(e, "flush") from e

    def close(self) -> None:
        """Release the device. Safe to call more than once."""
        if not self._connected:
            return

        with self._lock:
            try:
                if self._owns_usb:
                    usb.util.release_interface(self._handle, INTERFACE)
                    usb.util.dispose_resources(self._handle)
            except usb.core.USBError as e:
                logger.warning("Error closing device: %s", e)
            finally:
                self._handle = None
                self._owns_usb = False
                self._connected = False
                logger.info("Disconnected")

    def _require_handle(self):
        if not self._connected:
            raise NotConnectedError("Not connected to device")
        return self._handle

    # ─── Transfers ────────────────────────────────────────────────────

    def send(self, message: Message) -> int:
        """Encode and write one request to the OUT endpoint.

        Returns:
            Number of bytes written.

        Raises:
            LengthMismatchError: If the device accepted fewer bytes than the frame.
            TransportError: If the bulk write fails.
        """
        frame = encode_message(message)
        with self._lock:
            handle = self._require_handle()
            try:
                written = handle.write(EP_OUT, frame, timeout=self._timeout_ms)
            except usb.core.USBError as e:
                raise map_usb_error(e, f"send {message!r}") from e

        logger.debug("TX %d bytes: %s", len(frame), frame.hex(" "))
        if written != len(frame):
            raise LengthMismatchError(len(frame), written)
        return written

    def _read_frame(self) -> bytes:
        with self._lock:
            handle = self._require_handle()
            try:
                data = handle.read(EP_IN, MESSAGE_MAX_SIZE, timeout=self._timeout_ms)
            except usb.core.USBError as e:
                raise map_usb_error(e, "receive") from e

        frame = bytes(data)
        logger.debug("RX %d bytes: %s", len(frame), frame.hex(" "))
        return frame

    def receive(self) -> Message:
        """Read and decode one reply from the IN endpoint.

        Transient I/O errors are retried up to ``MAX_RECV_RETRIES`` times;
        every other error is raised immediately.

        Raises:
            DecodeError: If the reply frame does not parse.
            TransportError: On any other transport failure, or once the
                retry budget is exhausted.
        """
        for attempts_remaining in reversed(range(MAX_RECV_RETRIES)):
            try:
                frame = self._read_frame()
            except TransientIOError:
                # libusb reports sporadic I/O errors on otherwise healthy links
                logger.warning(
                    "I/O error during USB bulk receive, retrying "
                    "(%d attempts remaining)",
                    attempts_remaining,
                )
                continue
            return decode_padded(frame)

        raise TransportError(
            f"Bulk receive failed after {MAX_RECV_RETRIES} attempts"
        )

    def request(self, message: Message) -> Message:
        """Perform one transaction: send ``message`` and return the reply."""
        with self._lock:
            self.send(message)
            reply = self.receive()
        logger.debug("%r -> %r", message, reply)
        return reply

    def ready_to_use(self) -> bool:
        """Whether the device answers a ``Ping`` with ``Pong``."""
        try:
            return is_pong(self.request(Ping()))
        except UsbIoError as e:
            logger.debug("Ping failed: %s", e)
            return False

    # ─── MemoryInterface ──────────────────────────────────────────────

    def _read(self, address: int, size: DataSize) -> int:
        return parse_read_reply(self.request(Get(address, size)), size)

    def _write(self, address: int, data: Data) -> None:
        parse_write_reply(self.request(Set(address, data)))

    def try_read8(self, address: int) -> int:
        return self._read(address, DataSize.U8)

    def try_read16(self, address: int) -> int:
        return self._read(address, DataSize.U16)

    def try_read32(self, address: int) -> int:
        return self._read(address, DataSize.U32)

    def try_write8(self, address: int, value: int) -> None:
        self._write(address, Data.u8(value))

    def try_write16(self, address: int, value: int) -> None:
        self._write(address, Data.u16(value))

    def try_write32(self, address: int, value: int) -> None:
        self._write(address, Data.u32(value))

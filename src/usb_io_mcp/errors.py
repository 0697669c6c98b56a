"""Exception hierarchy for USB-IO.

Transport errors come from the USB link itself; decode errors come from
frames that do not parse, or parse into a reply the request did not call
for. The wire protocol has no error reply, so a request the device rejects
shows up on the host as a transfer timeout.
"""

from __future__ import annotations


class UsbIoError(Exception):
    """Base class for every USB-IO failure."""


class TransportError(UsbIoError):
    """The USB transfer failed, or the retry budget was exhausted."""


class DeviceNotFoundError(TransportError):
    """No device matching the vendor/product identifier is attached."""


class PermissionDeniedError(TransportError):
    """The operating system refused access to the device."""


class TransferTimeoutError(TransportError):
    """A bulk transfer did not complete within the configured timeout."""


class TransientIOError(TransportError):
    """Sporadic I/O fault reported by libusb; a retry may succeed."""


class NoDeviceError(TransportError):
    """The device disappeared from the bus."""


class LengthMismatchError(TransportError):
    """A bulk write transferred fewer bytes than the encoded frame."""

    def __init__(self, expected: int, written: int) -> None:
        super().__init__(
            f"Bulk write sent {written} of {expected} bytes"
        )
        self.expected = expected
        self.written = written


class NotConnectedError(TransportError):
    """The connection is closed."""


class DecodeError(UsbIoError, ValueError):
    """A frame does not correspond to a valid tag/payload combination."""


class UnexpectedReplyError(DecodeError):
    """A reply parsed, but its shape does not match the request."""


class MemoryAccessFault(RuntimeError):
    """Raised by the infallible memory accessors when a transaction fails.

    Not a ``UsbIoError``: ``except UsbIoError`` handlers do not catch it.
    The original error is chained as ``__cause__``.
    """

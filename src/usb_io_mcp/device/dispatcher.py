"""Device-side command dispatcher.

``UsbIoClass`` is the vendor-specific USB class the device stack polls.
It owns one bulk OUT endpoint (requests) and one bulk IN endpoint
(replies) and runs one transaction at a time::

    IDLE --frame--> PROCESSING --reply queued--> STALLED --IN complete--> IDLE
                        |
                        +--empty or malformed frame--> IDLE (no reply)

The OUT endpoint is stalled as soon as a frame is consumed and released
only once the reply has left the IN endpoint, so a second request can never
be accepted while a reply is pending.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

from ..errors import DecodeError
from ..protocol.framing import MESSAGE_MAX_SIZE, decode_padded, encode_message
from ..protocol.messages import (
    Ack,
    Data,
    DataMessage,
    Get,
    Message,
    Nop,
    Ping,
    Pong,
    Set,
)
from .memory import RegisterAccessor

logger = logging.getLogger(__name__)

INTERFACE_CLASS = 0xFF  # vendor specific
INTERFACE_SUBCLASS = 0x00
INTERFACE_PROTOCOL = 0x00


class DispatcherState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STALLED = "stalled"


class OutEndpoint(Protocol):
    """Bulk OUT endpoint as exposed by the device USB stack."""

    address: int

    def read(self) -> bytes: ...

    def stall(self) -> None: ...

    def unstall(self) -> None: ...


class InEndpoint(Protocol):
    """Bulk IN endpoint as exposed by the device USB stack."""

    address: int

    def write(self, data: bytes) -> int: ...


class UsbIoClass:
    """Decodes one request per OUT transfer and queues exactly one reply."""

    interface_class = INTERFACE_CLASS
    max_packet_size = MESSAGE_MAX_SIZE

    def __init__(
        self,
        accessor: RegisterAccessor,
        out_endpoint: OutEndpoint,
        in_endpoint: InEndpoint,
    ) -> None:
        self._accessor = accessor
        self._out = out_endpoint
        self._in = in_endpoint
        self._state = DispatcherState.IDLE
        self.transactions = 0
        self.dropped_frames = 0

    @property
    def state(self) -> DispatcherState:
        return self._state

    def _set_state(self, state: DispatcherState) -> None:
        logger.debug("dispatcher %s -> %s", self._state.value, state.value)
        self._state = state

    def execute(self, message: Message) -> Message:
        """Run one decoded request against the register accessor."""
        if isinstance(message, Ping):
            return Pong()
        if isinstance(message, Set):
            self._accessor.write(message.address, message.data)
            return Ack()
        if isinstance(message, Get):
            value = self._accessor.read(message.address, message.size)
            return DataMessage(Data(message.size, value))
        return Nop()

    def handle_frame(self, frame: bytes) -> Message | None:
        """Decode and execute one frame.

        Unused bytes after the message, such as buffer padding, are ignored.

        Returns:
            The reply, or ``None`` for an empty or malformed frame.
        """
        if not frame:
            return None
        try:
            request = decode_padded(frame)
        except DecodeError as e:
            logger.debug("dropping malformed frame %s: %s", bytes(frame).hex(" "), e)
            return None
        return self.execute(request)

    def endpoint_out(self, address: int) -> None:
        """Poll callback: the OUT endpoint at ``address`` received a frame."""
        if address != self._out.address:
            return
        if self._state is not DispatcherState.IDLE:
            # a reply is still pending; the frame stays unread in the endpoint
            logger.debug("ignoring OUT frame while %s", self._state.value)
            return

        frame = self._out.read()
        self._out.stall()
        self._set_state(DispatcherState.PROCESSING)

        reply = self.handle_frame(frame)
        if reply is None:
            self.dropped_frames += 1
            self._out.unstall()
            self._set_state(DispatcherState.IDLE)
            return

        self._in.write(encode_message(reply))
        self._set_state(DispatcherState.STALLED)

    def endpoint_in_complete(self, address: int) -> None:
        """Poll callback: the IN endpoint at ``address`` finished a transfer."""
        if address != self._in.address or self._state is not DispatcherState.STALLED:
            return
        self.transactions += 1
        self._out.unstall()
        self._set_state(DispatcherState.IDLE)

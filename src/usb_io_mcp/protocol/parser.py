"""Interpretation of device replies against the request that produced them."""

from __future__ import annotations

from ..errors import UnexpectedReplyError
from .messages import Ack, DataMessage, DataSize, Message, Pong


def is_pong(reply: Message) -> bool:
    """Whether ``reply`` answers a ``Ping``."""
    return isinstance(reply, Pong)


def parse_read_reply(reply: Message, size: DataSize) -> int:
    """Extract the value of a ``Get`` reply.

    Raises:
        UnexpectedReplyError: If the reply is not ``Data`` of width ``size``.
    """
    if not isinstance(reply, DataMessage):
        raise UnexpectedReplyError(f"Expected Data reply to Get, got {reply!r}")
    if reply.data.size != size:
        raise UnexpectedReplyError(
            f"Expected {size.name} data, got {reply.data.size.name}"
        )
    return reply.data.value


def parse_write_reply(reply: Message) -> None:
    """Check that a ``Set`` was acknowledged."""
    if not isinstance(reply, Ack):
        raise UnexpectedReplyError(f"Expected Ack reply to Set, got {reply!r}")

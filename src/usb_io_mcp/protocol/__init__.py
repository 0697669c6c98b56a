"""Protocol layer: message vocabulary, binary framing, and reply parsing."""

from .framing import MESSAGE_MAX_SIZE, decode_message, encode_message
from .messages import Ack, Data, DataMessage, DataSize, Get, Message, Nop, Ping, Pong, Set, Tag

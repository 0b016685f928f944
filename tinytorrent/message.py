"""Peer wire protocol messages."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from .bitfield import Bitfield
from .download import Block


class MessageId(IntEnum):
    """Identifiers of the peer wire messages."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9


@dataclass(frozen=True, slots=True)
class Message:
    """A length-prefixed message: one id byte followed by its payload."""

    message_id: int
    payload: bytes = b""

    def encode(self) -> bytes:
        """Return the message as sent on the wire, length prefix included."""
        payload = bytes(self.payload)
        return struct.pack(">IB", 1 + len(payload), int(self.message_id)) + payload


def unchoke() -> Message:
    return Message(MessageId.UNCHOKE)


def interested() -> Message:
    return Message(MessageId.INTERESTED)


def not_interested() -> Message:
    return Message(MessageId.NOT_INTERESTED)


def bitfield_message(bitfield: Bitfield) -> Message:
    return Message(MessageId.BITFIELD, bitfield.to_bytes())


def _block_triple(block: Block) -> bytes:
    return struct.pack(">III", block.piece_index, block.begin, block.length)


def request(block: Block) -> Message:
    return Message(MessageId.REQUEST, _block_triple(block))


def piece(block: Block, data: bytes) -> Message:
    return Message(MessageId.PIECE, struct.pack(">II", block.piece_index, block.begin) + bytes(data))


def cancel(block: Block) -> Message:
    return Message(MessageId.CANCEL, _block_triple(block))
"""The handshake that opens every peer connection."""

from __future__ import annotations

from dataclasses import dataclass

from .torrent import HASH_SIZE, is_zero_hash

PSTR = b"BitTorrent protocol"
PEER_ID_SIZE = 20
RESERVED_SIZE = 8
HANDSHAKE_LEN = 1 + len(PSTR) + RESERVED_SIZE + HASH_SIZE + PEER_ID_SIZE


class HandshakeError(Exception):
    """Raised when a handshake is malformed or cannot be exchanged."""


@dataclass(frozen=True, slots=True)
class Handshake:
    """Info hash and peer id announced by one side of a connection."""

    info_hash: bytes
    peer_id: bytes

    def __post_init__(self) -> None:
        if len(self.info_hash) != HASH_SIZE:
            raise ValueError(f"info hash must be {HASH_SIZE} bytes")
        if len(self.peer_id) != PEER_ID_SIZE:
            raise ValueError(f"peer id must be {PEER_ID_SIZE} bytes")

    def encode(self) -> bytes:
        return (
            bytes([len(PSTR)])
            + PSTR
            + bytes(RESERVED_SIZE)
            + bytes(self.info_hash)
            + bytes(self.peer_id)
        )

    @classmethod
    def decode(cls, raw: bytes, expected_info_hash: bytes | None = None) -> "Handshake":
        """Parse a handshake; a non-zero ``expected_info_hash`` must match the one received."""
        raw = bytes(raw)
        if not raw or raw[0] != len(PSTR):
            raise HandshakeError("invalid handshake: unable to read pstrlen")
        position = 1
        if raw[position:position + len(PSTR)] != PSTR:
            raise HandshakeError("invalid handshake: unable to read pstr")
        position += len(PSTR)
        if len(raw) < position + RESERVED_SIZE:
            raise HandshakeError("invalid handshake: unable to read reserved bytes")
        position += RESERVED_SIZE
        info_hash = raw[position:position + HASH_SIZE]
        expected = None if expected_info_hash is None or is_zero_hash(expected_info_hash) else bytes(expected_info_hash)
        if len(info_hash) != HASH_SIZE or (expected is not None and info_hash != expected):
            raise HandshakeError("invalid handshake: unable to read info_hash")
        position += HASH_SIZE
        peer_id = raw[position:position + PEER_ID_SIZE]
        if len(peer_id) != PEER_ID_SIZE:
            raise HandshakeError("invalid handshake: unable to read peer_id")
        return cls(info_hash=info_hash, peer_id=peer_id)
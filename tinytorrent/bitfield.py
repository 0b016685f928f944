"""Piece availability bitfields as used on the wire."""

from __future__ import annotations

import threading

_BITS = 8


class MalformedBitfieldError(ValueError):
    """Raised when a bitfield payload has the wrong size or stray spare bits."""

    def __init__(self, message: str = "malformed bitfield") -> None:
        super().__init__(message)


def _byte_len(pieces_count: int) -> int:
    return (pieces_count + _BITS - 1) // _BITS


def _completed_pattern(pieces_count: int) -> bytes:
    pattern = bytearray(b"\xff" * _byte_len(pieces_count))
    remainder = pieces_count % _BITS
    if remainder:
        pattern[-1] = 0xFF ^ (0xFF >> remainder)
    return bytes(pattern)


class Bitfield:
    """Thread-safe set of downloaded pieces, highest bit first in each byte."""

    def __init__(self, pieces_count: int) -> None:
        if pieces_count < 0:
            raise ValueError("pieces count must not be negative")
        self._pieces_count = pieces_count
        self._bits = bytearray(_byte_len(pieces_count))
        self._completed = _completed_pattern(pieces_count)
        self._lock = threading.Lock()

    @classmethod
    def from_payload(cls, payload: bytes, pieces_count: int) -> "Bitfield":
        """Build a bitfield from a peer's payload, checking size and spare bits."""
        if len(payload) != _byte_len(pieces_count):
            raise MalformedBitfieldError()
        remainder = pieces_count % _BITS
        if remainder and payload[-1] & ((1 << (_BITS - remainder)) - 1):
            raise MalformedBitfieldError()
        bitfield = cls(pieces_count)
        bitfield._bits[:] = payload
        return bitfield

    def size(self) -> int:
        """Number of bytes in the bitfield."""
        return len(self._bits)

    def pieces_count(self) -> int:
        return self._pieces_count

    def downloaded_pieces_count(self) -> int:
        with self._lock:
            return sum(byte.bit_count() for byte in self._bits)

    def to_bytes(self) -> bytes:
        with self._lock:
            return bytes(self._bits)

    def is_completed(self) -> bool:
        with self._lock:
            return self._bits == self._completed

    def set(self, piece_index: int) -> None:
        if not 0 <= piece_index < self._pieces_count:
            raise IndexError(f"piece index is out of range [0, {self._pieces_count})")
        with self._lock:
            self._bits[piece_index // _BITS] |= 1 << (7 - piece_index % _BITS)

    def has(self, piece_index: int) -> bool:
        if not 0 <= piece_index < self._pieces_count:
            raise IndexError("piece index out of range")
        with self._lock:
            return bool(self._bits[piece_index // _BITS] & (1 << (7 - piece_index % _BITS)))

    def interested(self, other: "Bitfield") -> bool:
        """True when ``other`` has a piece that this bitfield lacks."""
        if other.pieces_count() != self._pieces_count:
            raise ValueError("bitfields have different pieces counts")
        theirs = other.to_bytes()
        with self._lock:
            return any(~mine & their & 0xFF for mine, their in zip(self._bits, theirs))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitfield):
            return NotImplemented
        return self._pieces_count == other._pieces_count and self.to_bytes() == other.to_bytes()

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Bitfield(pieces_count={self._pieces_count}, bits={self.to_bytes().hex()})"
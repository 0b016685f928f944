"""Bencode encoding and decoding.

Values map onto Python types: integers are ``int``, strings are ``bytes``,
lists are ``list`` and dictionaries are ``dict`` with ``bytes`` keys.
``str`` values and keys are accepted when encoding and are written as UTF-8.
"""

from __future__ import annotations

import io
import re
from typing import Any, BinaryIO, Iterable

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_INTEGER = re.compile(rb"[+-]?[0-9]+")


class BencodeError(ValueError):
    """Raised when a value cannot be encoded or data cannot be decoded."""


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise BencodeError(f"dictionary keys must be strings, got {type(value).__name__}")


def _encode_into(value: Any, out: list[bytes]) -> None:
    if isinstance(value, bool):
        raise BencodeError("cannot bencode a bool")
    if isinstance(value, int):
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray, memoryview, str)):
        raw = _as_bytes(value)
        out.append(b"%d:" % len(raw))
        out.append(raw)
    elif isinstance(value, (list, tuple)):
        out.append(b"l")
        for item in value:
            _encode_into(item, out)
        out.append(b"e")
    elif isinstance(value, dict):
        out.append(b"d")
        items = sorted(((_as_bytes(key), item) for key, item in value.items()), key=lambda kv: kv[0])
        for key, item in items:
            _encode_into(key, out)
            _encode_into(item, out)
        out.append(b"e")
    else:
        raise BencodeError(f"cannot bencode value of type {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Return the bencoded form of ``value``; dictionary keys are written sorted."""
    out: list[bytes] = []
    _encode_into(value, out)
    return b"".join(out)


def encode_all(values: Iterable[Any]) -> bytes:
    """Bencode each value in turn and return the concatenation."""
    out: list[bytes] = []
    for value in values:
        _encode_into(value, out)
    return b"".join(out)


def _parse_int(raw: bytes, what: str) -> int:
    if not _INTEGER.fullmatch(raw):
        raise BencodeError(f"invalid {what}: {raw!r}")
    number = int(raw)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise BencodeError(f"{what} out of range: {raw!r}")
    return number


class _Decoder:
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._pending = b""

    def _read_byte(self) -> bytes:
        if self._pending:
            byte, self._pending = self._pending, b""
            return byte
        byte = self._stream.read(1)
        if not byte:
            raise BencodeError("unexpected end of data")
        return byte

    def _read_until(self, delimiter: bytes) -> bytes:
        buf = bytearray()
        while (byte := self._read_byte()) != delimiter:
            buf += byte
        return bytes(buf)

    def _read_exact(self, size: int) -> bytes:
        buf = bytearray(self._pending)
        self._pending = b""
        while len(buf) < size:
            chunk = self._stream.read(size - len(buf))
            if not chunk:
                raise BencodeError("unexpected end of data")
            buf += chunk
        return bytes(buf)

    def _at_end(self) -> bool:
        byte = self._read_byte()
        if byte == b"e":
            return True
        self._pending = byte
        return False

    def value(self) -> Any:
        byte = self._read_byte()
        if byte == b"i":
            return _parse_int(self._read_until(b"e"), "integer")
        if byte == b"l":
            items: list[Any] = []
            while not self._at_end():
                items.append(self.value())
            return items
        if byte == b"d":
            result: dict[bytes, Any] = {}
            while not self._at_end():
                key = self.value()
                if not isinstance(key, bytes):
                    raise BencodeError("non-string dictionary key")
                result[key] = self.value()
            return result
        self._pending = byte
        length = _parse_int(self._read_until(b":"), "string length")
        if length < 0:
            raise BencodeError(f"negative string length: {length}")
        return self._read_exact(length)


def decode_from(stream: BinaryIO) -> Any:
    """Decode one value from a binary stream, leaving the rest unread."""
    return _Decoder(stream).value()


def decode(data: bytes) -> Any:
    """Decode the first value in ``data``; anything after it is ignored."""
    return decode_from(io.BytesIO(bytes(data)))


def _hex_dump(raw: bytes) -> str:
    lines = []
    for offset in range(0, len(raw), 16):
        chunk = raw[offset:offset + 16]
        cells = [f"{b:02x}" for b in chunk] + ["  "] * (16 - len(chunk))
        hex_part = " ".join(cells[:8]) + "  " + " ".join(cells[8:])
        text = "".join(chr(b) if 32 <= b <= 126 else "." for b in chunk)
        lines.append(f"{offset:08x}  {hex_part}  |{text}|\n")
    return "".join(lines)


def _text(raw: bytes) -> str:
    if any(b > 127 for b in raw):
        return _hex_dump(raw)
    return raw.decode("ascii")


def _dict_tree(value: dict, indent: str, key_prefix: str) -> str:
    parts = []
    for key in sorted(value, key=_as_bytes):
        item = value[key]
        key_text = _text(_as_bytes(key))
        parts.append(f"{indent}{key_prefix}{key_text}\n")
        if isinstance(item, dict):
            parts.append(_dict_tree(item, indent + "\t", ""))
        elif isinstance(item, list):
            parts.append(_list_tree(item, indent + "\t", f"{key_prefix}{key_text}."))
        elif isinstance(item, int):
            parts.append(f"{indent}\t  {item}\n")
        else:
            parts.append(f"{indent}\t  {_text(_as_bytes(item))}\n")
    return "".join(parts)


def _list_tree(value: list, indent: str, key_prefix: str) -> str:
    parts = []
    for index, item in enumerate(value):
        if isinstance(item, dict):
            parts.append(_dict_tree(item, indent + "\t", ""))
        elif isinstance(item, list):
            parts.append(_list_tree(item, indent + "\t", f"{key_prefix}[{index}]."))
        elif isinstance(item, int):
            parts.append(f"{indent}{item}\n")
        else:
            parts.append(f"{indent}{_text(_as_bytes(item))}\n")
    return "".join(parts)


def format_tree(value: Any) -> str:
    """Render a decoded value as readable text; non-ASCII strings become hex dumps."""
    if isinstance(value, dict):
        return _dict_tree(value, "", "")
    if isinstance(value, list):
        return "".join(f"\t{format_tree(item)}\n" for item in value)
    if isinstance(value, int):
        return str(value)
    return _text(_as_bytes(value))
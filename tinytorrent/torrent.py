"""Torrent metainfo files, info hashes and piece verification."""

from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .bencode import BencodeError, decode, encode

HASH_SIZE = 20


class TorrentError(ValueError):
    """Raised when a torrent file is malformed or a piece cannot be read."""


@dataclass(frozen=True)
class DownloadFile:
    """One file that a torrent downloads."""

    length: int
    name: str


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return posixpath.normpath(joined) if joined else ""


@dataclass
class TorrentFile:
    """Parsed contents of a .torrent file."""

    torrent_file_name: str
    download_dir: str
    announce: str = ""
    info_hash: bytes = bytes(HASH_SIZE)
    piece_hashes: list[bytes] = field(default_factory=list)
    piece_length: int = 0
    download_files: list[DownloadFile] = field(default_factory=list)

    @classmethod
    def open(cls, torrent_file_name: str | Path, download_dir: str) -> "TorrentFile":
        """Read and parse the torrent file at ``torrent_file_name``."""
        data = Path(torrent_file_name).read_bytes()
        return cls.from_bytes(data, str(torrent_file_name), download_dir)

    @classmethod
    def from_bytes(cls, data: bytes, torrent_file_name: str, download_dir: str) -> "TorrentFile":
        """Parse bencoded metainfo held in memory."""
        try:
            document = decode(data)
        except BencodeError as exc:
            raise TorrentError(f"unable to decode torrent: {exc}") from exc
        torrent = cls(torrent_file_name=torrent_file_name, download_dir=download_dir)
        torrent._unmarshal(document)
        return torrent

    def _unmarshal(self, document: Any) -> None:
        if not isinstance(document, dict):
            raise TorrentError("torrent must be a dictionary")
        announce = document.get(b"announce")
        if not isinstance(announce, bytes):
            raise TorrentError("announce must be a string")
        info = document.get(b"info")
        if not isinstance(info, dict):
            raise TorrentError("info must be a dictionary")
        info_hash = hashlib.sha1(encode(info)).digest()

        piece_length = info.get(b"piece length")
        if not isinstance(piece_length, int):
            raise TorrentError("piece length must be an integer")
        pieces = info.get(b"pieces")
        if not isinstance(pieces, bytes):
            raise TorrentError("pieces must be bytes")
        if len(pieces) % HASH_SIZE:
            raise TorrentError(f"malformed pieces, must be multiple of {HASH_SIZE}")
        piece_hashes = [pieces[i:i + HASH_SIZE] for i in range(0, len(pieces), HASH_SIZE)]

        name = info.get(b"name")
        if not isinstance(name, bytes):
            raise TorrentError("name must be a string")

        files: list[DownloadFile] = []
        length = info.get(b"length")
        if isinstance(length, int):
            files.append(DownloadFile(length=length, name=_join(self.download_dir, _text(name))))
        else:
            entries = info.get(b"files")
            if not isinstance(entries, list):
                raise TorrentError("files list doesn't exist")
            for entry in entries:
                if not isinstance(entry, dict):
                    raise TorrentError("files list item isn't a dict")
                file_length = entry.get(b"length")
                if not isinstance(file_length, int):
                    raise TorrentError("file's length must be an integer")
                path_parts = entry.get(b"path")
                if not isinstance(path_parts, list):
                    raise TorrentError("file's path must be a list")
                if not all(isinstance(part, bytes) for part in path_parts):
                    raise TorrentError("file's path elem must be a string")
                file_path = _join(self.download_dir, *(_text(part) for part in path_parts))
                files.append(DownloadFile(length=file_length, name=file_path))
        if not files:
            raise TorrentError("empty files dict")

        self.announce = _text(announce)
        self.piece_length = piece_length
        self.piece_hashes = piece_hashes
        self.info_hash = info_hash
        self.download_files = files

    def pieces_count(self) -> int:
        return len(self.piece_hashes)

    def download_files_count(self) -> int:
        return len(self.download_files)

    def total_length(self) -> int:
        return sum(file.length for file in self.download_files)


def is_zero_hash(info_hash: bytes) -> bool:
    """Treat the all-zero hash as "no hash"."""
    return bytes(info_hash) == bytes(HASH_SIZE)


def verify_piece(reader: Any, piece_hash: bytes, piece_index: int, piece_size: int) -> bool:
    """Check a piece against its SHA-1 hash.

    ``reader`` is either a bytes-like buffer or an object with
    ``read_at(size, offset)`` returning the bytes available there.
    """
    offset = piece_index * piece_size
    if offset < 0:
        raise TorrentError(f"unable to read at {offset}: negative offset")
    if hasattr(reader, "read_at"):
        try:
            data = reader.read_at(piece_size, offset)
        except OSError as exc:
            raise TorrentError(f"unable to read at {offset}: {exc}") from exc
    else:
        data = bytes(memoryview(reader)[offset:offset + piece_size])
    return hashlib.sha1(data).digest() == bytes(piece_hash)
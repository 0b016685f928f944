"""On-disk data of torrents, addressed as one continuous byte stream."""

from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import BinaryIO, Iterator

from .bitfield import Bitfield
from .torrent import TorrentError, TorrentFile, verify_piece


class StorageError(Exception):
    """Raised when torrent data cannot be created or accessed."""


class ShortWriteError(StorageError):
    """Raised when only part of the data could be written."""

    def __init__(self, written: int) -> None:
        super().__init__(f"short write: {written} bytes written")
        self.written = written


def _open_sized(name: str, length: int) -> BinaryIO:
    path = Path(name)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageError(f"unable to create directory(es): {exc}") from exc
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o664)
        handle = os.fdopen(fd, "r+b", buffering=0)
    except OSError as exc:
        raise StorageError(f"unable to open file: {exc}") from exc
    try:
        if os.fstat(handle.fileno()).st_size != length:
            handle.truncate(length)
    except OSError as exc:
        handle.close()
        raise StorageError(f"unable to truncate: {exc}") from exc
    return handle


def _read_exact(handle: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = handle.read(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _write_all(handle: BinaryIO, data: memoryview) -> int:
    written = 0
    while written < len(data):
        count = handle.write(data[written:])
        if not count:
            break
        written += count
    return written


class TorrentData:
    """The files of one torrent, with a bitfield of the pieces already on disk."""

    def __init__(self, torrent: TorrentFile) -> None:
        self.torrent = torrent
        self._lock = threading.Lock()
        self._sizes = [file.length for file in torrent.download_files]
        self._files: list[BinaryIO] = []
        try:
            for download_file in torrent.download_files:
                self._files.append(_open_sized(download_file.name, download_file.length))
            self.bitfield = self._calc_bitfield()
        except BaseException:
            for handle in self._files:
                handle.close()
            raise

    def _calc_bitfield(self) -> Bitfield:
        bitfield = Bitfield(self.torrent.pieces_count())
        piece_length = self.torrent.piece_length

        def check(item: tuple[int, bytes]) -> bool:
            index, piece_hash = item
            return verify_piece(self, piece_hash, index, piece_length)

        try:
            with ThreadPoolExecutor() as pool:
                results = list(pool.map(check, enumerate(self.torrent.piece_hashes)))
        except TorrentError as exc:
            raise StorageError(f"unable to calculate bitfield: {exc}") from exc
        for index, verified in enumerate(results):
            if verified:
                bitfield.set(index)
        return bitfield

    def info_hash(self) -> bytes:
        return self.torrent.info_hash

    def _locate(self, offset: int) -> tuple[int, int] | None:
        if offset < 0 or offset >= self.torrent.total_length():
            return None
        start = 0
        for index, size in enumerate(self._sizes):
            if offset < start + size:
                return index, offset - start
            start += size
        return None

    def read_at(self, size: int, offset: int) -> bytes:
        """Read up to ``size`` bytes at ``offset``; fewer are returned at the end of the data."""
        if size < 0:
            raise ValueError("size must not be negative")
        location = self._locate(offset)
        if location is None or size == 0:
            return b""
        index, position = location
        chunks: list[bytes] = []
        remaining = size
        with self._lock:
            for handle, file_size in zip(self._files[index:], self._sizes[index:]):
                want = min(remaining, file_size - position)
                handle.seek(position)
                chunk = _read_exact(handle, want)
                chunks.append(chunk)
                remaining -= len(chunk)
                if remaining == 0 or len(chunk) < want:
                    break
                position = 0
        return b"".join(chunks)

    def write_at(self, data: bytes, offset: int) -> int:
        """Write ``data`` at ``offset`` across file boundaries.

        Raises ShortWriteError, carrying the count written, when the data
        runs past the end or the offset is out of range.
        """
        view = memoryview(data).cast("B")
        location = self._locate(offset)
        if location is None:
            raise ShortWriteError(0)
        index, position = location
        written = 0
        with self._lock:
            for handle, file_size in zip(self._files[index:], self._sizes[index:]):
                if written >= len(view):
                    break
                limit = min(len(view), written + file_size - position)
                handle.seek(position)
                count = _write_all(handle, view[written:limit])
                written += count
                if count < limit - (written - count):
                    break
                position = 0
        if written < len(view):
            raise ShortWriteError(written)
        return written

    def close(self) -> None:
        """Close every file; the last error met, if any, is raised afterwards."""
        last_error: OSError | None = None
        for handle in self._files:
            try:
                handle.close()
            except OSError as exc:
                last_error = exc
        if last_error is not None:
            raise last_error

    def __enter__(self) -> "TorrentData":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Storage:
    """Thread-safe collection of torrent data keyed by info hash."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[bytes, TorrentData] = {}

    def __iter__(self) -> Iterator[TorrentData]:
        with self._lock:
            snapshot = list(self._items.values())
        return iter(snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, info_hash: bytes) -> TorrentData | None:
        with self._lock:
            return self._items.get(bytes(info_hash))

    def add(self, torrent: TorrentFile) -> TorrentData:
        """Open the torrent's files and add them under its info hash."""
        if torrent is None:
            raise TypeError("torrent must not be None")
        try:
            data = TorrentData(torrent)
        except StorageError as exc:
            raise StorageError(f"storage: unable to create torrent data: {exc}") from exc
        with self._lock:
            previous = self._items.get(torrent.info_hash)
            self._items[torrent.info_hash] = data
        if previous is not None:
            previous.close()
        return data

    def close(self) -> None:
        """Close all torrent data; the last error met, if any, is raised afterwards."""
        last_error: OSError | None = None
        with self._lock:
            for data in self._items.values():
                try:
                    data.close()
                except OSError as exc:
                    last_error = exc
        if last_error is not None:
            raise last_error

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
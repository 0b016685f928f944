"""Blocks to request from peers and bookkeeping of what has arrived."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from .bitfield import Bitfield
from .divide import Item, divide
from .torrent import verify_piece

BLOCK_SIZE = 1 << 14


class NoMoreBlocksError(Exception):
    """Raised once every piece of a torrent has been downloaded."""

    def __init__(self, message: str = "no more blocks") -> None:
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class Block:
    """A byte range within a piece."""

    piece_index: int
    begin: int
    length: int


class RequestedBlocks:
    """Thread-safe set of blocks, remembering when each was added."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._added: dict[Block, float] = {}

    def add(self, block: Block) -> None:
        with self._lock:
            self._added[block] = time.monotonic()

    def discard(self, block: Block) -> None:
        with self._lock:
            self._added.pop(block, None)

    def __iter__(self) -> Iterator[Block]:
        with self._lock:
            snapshot = list(self._added)
        return iter(snapshot)

    def __contains__(self, block: object) -> bool:
        with self._lock:
            return block in self._added

    def __len__(self) -> int:
        with self._lock:
            return len(self._added)

    def len_non_expired(self, expiration: float) -> int:
        """Count blocks added less than ``expiration`` seconds ago."""
        now = time.monotonic()
        with self._lock:
            return sum(1 for added in self._added.values() if added + expiration > now)


class BlockGenerator:
    """Hands out blocks still to download and verifies pieces as they complete."""

    def __init__(self, items: Iterable[Item], bitfield: Bitfield) -> None:
        self._bitfield = bitfield
        self._blocks_by_piece: dict[int, set[Block]] = {}
        for item in items:
            if not bitfield.has(item.parent_index):
                block = Block(item.parent_index, item.begin, item.length)
                self._blocks_by_piece.setdefault(item.parent_index, set()).add(block)
        self._queue: deque[Block] = deque(
            block
            for blocks in self._blocks_by_piece.values()
            for block in sorted(blocks, key=lambda b: b.begin)
        )
        self._downloaded: set[Block] = set()
        self._closed = not self._queue
        self._lock = threading.Lock()

    def generate(self) -> Block | None:
        """Return the next block not yet downloaded, or None if none is queued right now.

        Raises NoMoreBlocksError once all pieces are complete.
        """
        with self._lock:
            while self._queue:
                block = self._queue.popleft()
                if block not in self._downloaded:
                    self._queue.append(block)
                    return block
            if self._closed:
                raise NoMoreBlocksError()
            return None

    def mark_as_downloaded(self, block: Block, reader: Any, piece_hash: bytes, piece_size: int) -> bool:
        """Record an arrived block; return True when it completed a verified piece.

        A piece that fails verification has all its blocks queued again.
        """
        with self._lock:
            blocks = self._blocks_by_piece.get(block.piece_index)
            if blocks is None or block not in blocks or block in self._downloaded:
                return False
            self._downloaded.add(block)
            if not blocks <= self._downloaded:
                return False
            if not verify_piece(reader, piece_hash, block.piece_index, piece_size):
                self._downloaded -= blocks
                self._queue.extend(sorted(blocks, key=lambda b: b.begin))
                return False
            self._downloaded |= blocks
            self._bitfield.set(block.piece_index)
            if self._bitfield.is_completed():
                self._closed = True
            return True


class BlockGenerators:
    """Thread-safe mapping of info hash to block generator."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generators: dict[bytes, BlockGenerator] = {}

    def store(self, info_hash: bytes, generator: BlockGenerator) -> None:
        with self._lock:
            self._generators[bytes(info_hash)] = generator

    def load(self, info_hash: bytes) -> BlockGenerator | None:
        with self._lock:
            return self._generators.get(bytes(info_hash))


def create_block_generators(storage: Iterable[Any]) -> BlockGenerators:
    """Build a block generator for every torrent held in ``storage``."""
    generators = BlockGenerators()
    for data in storage:
        torrent = data.torrent
        items = divide(torrent.total_length(), [torrent.piece_length, BLOCK_SIZE])
        generators.store(data.info_hash(), BlockGenerator(items, data.bitfield))
    return generators
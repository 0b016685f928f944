"""Splitting a byte range into pieces and pieces into blocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence


@dataclass(frozen=True)
class Item:
    """A leaf chunk: its index within its parent and its offset there."""

    parent_index: int
    index: int
    begin: int
    length: int


def _divide(parent_index: int, total_size: int, sizes: Sequence[int]) -> Iterator[Item]:
    size, rest = sizes[0], sizes[1:]
    count = -(-total_size // size)
    for i in range(count):
        length = total_size - i * size if i == count - 1 else size
        if rest:
            yield from _divide(i, length, rest)
        else:
            yield Item(parent_index=parent_index, index=i, begin=i * size, length=length)


def divide(total_size: int, sizes: Sequence[int]) -> Iterator[Item]:
    """Recursively divide ``total_size`` by each size in turn, yielding the leaves.

    With sizes ``[piece_length, block_size]`` this yields every block of every
    piece, with ``parent_index`` being the piece index.
    """
    sizes = list(sizes)
    if not sizes:
        raise ValueError("empty sizes")
    if any(size <= 0 for size in sizes):
        raise ValueError("sizes must be positive")
    return _divide(0, total_size, sizes)
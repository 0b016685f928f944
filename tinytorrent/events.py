"""Progress events passed from the download machinery to the user interface."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ProgressPieceDownloaded:
    """A torrent now has ``downloaded_count`` verified pieces."""

    info_hash: bytes
    downloaded_count: int


@dataclass(frozen=True, slots=True)
class ProgressConnRead:
    """``bytes_read`` bytes arrived from a peer of a torrent."""

    info_hash: bytes
    bytes_read: int


@dataclass(frozen=True, slots=True)
class ProgressSpeed:
    """Average download speed of a torrent in bytes per second."""

    info_hash: bytes
    speed: int
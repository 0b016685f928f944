"""Terminal table showing the progress of every torrent."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

from rich.live import Live
from rich.table import Table

from .events import ProgressPieceDownloaded, ProgressSpeed
from .storage import TorrentData
from .utils import format_bytes

PROGRESS_BAR_WIDTH = 20
REDRAW_INTERVAL = 1.0
HEADERS = (
    "Name",
    "Size",
    "Pieces (total)",
    "Pieces (downloaded)",
    "Download speed",
    "Progress",
)
_FILLED = "■"
_EMPTY = "□"


def progress_bar(current: int, total: int, width: int = PROGRESS_BAR_WIDTH) -> str:
    """A bar of ``width`` squares, filled in proportion to ``current / total``."""
    if total <= 0:
        raise ValueError("total must be positive")
    if width < 0:
        raise ValueError("width must not be negative")
    filled = min(max(width * current // total, 0), width)
    return _FILLED * filled + _EMPTY * (width - filled)


@dataclass
class _Row:
    name: str
    size: int
    pieces: int
    downloaded: int = 0
    speed: int = 0


class ProgressTable:
    """One row per torrent: name, size, piece counts, speed and a progress bar."""

    def __init__(self, storage: Iterable[TorrentData]) -> None:
        self._rows: dict[bytes, _Row] = {}
        for data in storage:
            torrent = data.torrent
            self._rows[bytes(data.info_hash())] = _Row(
                name=str(torrent.torrent_file_name),
                size=torrent.total_length(),
                pieces=torrent.pieces_count(),
            )

    def _row(self, info_hash: bytes) -> _Row:
        try:
            return self._rows[bytes(info_hash)]
        except KeyError:
            raise KeyError(f"unknown torrent {bytes(info_hash).hex()}") from None

    def set_speed(self, info_hash: bytes, speed: int) -> None:
        """Record the download speed of a torrent, in bytes per second."""
        self._row(info_hash).speed = speed

    def set_downloaded(self, info_hash: bytes, downloaded: int) -> None:
        """Record how many pieces of a torrent are downloaded."""
        self._row(info_hash).downloaded = downloaded

    def render(self) -> Table:
        """Build the table as it currently stands."""
        table = Table(show_lines=True, header_style="yellow")
        for header in HEADERS:
            table.add_column(header)
        for row in self._rows.values():
            bar = progress_bar(row.downloaded, row.pieces) if row.pieces > 0 else _EMPTY * PROGRESS_BAR_WIDTH
            table.add_row(
                row.name,
                format_bytes(row.size),
                str(row.pieces),
                str(row.downloaded),
                f"{format_bytes(row.speed)}/s",
                bar,
            )
        return table


async def run_ui(
    table: ProgressTable,
    progress_speed: "asyncio.Queue[ProgressSpeed]",
    progress_pieces: "asyncio.Queue[ProgressPieceDownloaded]",
) -> None:
    """Show the table, applying progress events and redrawing every second until cancelled."""

    async def consume_speed() -> None:
        while True:
            event = await progress_speed.get()
            try:
                table.set_speed(event.info_hash, event.speed)
            except KeyError:
                continue

    async def consume_pieces() -> None:
        while True:
            event = await progress_pieces.get()
            try:
                table.set_downloaded(event.info_hash, event.downloaded_count)
            except KeyError:
                continue

    with Live(table.render(), auto_refresh=False) as live:
        consumers = [
            asyncio.create_task(consume_speed()),
            asyncio.create_task(consume_pieces()),
        ]
        try:
            while True:
                await asyncio.sleep(REDRAW_INTERVAL)
                live.update(table.render(), refresh=True)
        finally:
            for task in consumers:
                task.cancel()
            await asyncio.gather(*consumers, return_exceptions=True)
"""Command line entry point of the torrent client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence, TextIO

from .bencode import BencodeError
from .client import Client
from .peer import peer_id_from_string
from .storage import Storage, StorageError
from .torrent import TorrentError, TorrentFile
from .ui import ProgressTable, run_ui

VERSION = "0.1"
LISTEN_PORT = 6881
PEER_ID = "-GO0001-random_bytes"
LOG_DIR = ".torrent-client"
LOG_FILE = "app.log"


def parse_pairs(args: Sequence[str]) -> list[tuple[str, str]]:
    """Split arguments into (torrent file, destination directory) pairs."""
    args = list(args)
    if len(args) < 2:
        raise ValueError(f"requires at least 2 args, only received {len(args)}")
    if len(args) % 2:
        raise ValueError(
            f"expected one or more pairs of (file.torrent destination_dir), received {len(args)} args"
        )
    return list(zip(args[0::2], args[1::2]))


def open_log_file(home: str | Path | None = None) -> TextIO:
    """Open ``~/.torrent-client/app.log`` for writing, truncating it."""
    try:
        home_dir = Path(home) if home is not None else Path.home()
    except RuntimeError as exc:
        raise OSError(f"unable get user's home directory: {exc}") from exc
    log_dir = home_dir / LOG_DIR
    if not log_dir.exists():
        try:
            log_dir.mkdir(mode=0o755)
        except OSError as exc:
            raise OSError(f"unable to create log directory: {exc}") from exc
    try:
        return open(log_dir / LOG_FILE, "w", encoding="utf-8")
    except OSError as exc:
        raise OSError(f"unable to open log file: {exc}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torrent-client",
        usage="torrent-client (file.torrent destination_dir)...",
        description="BitTorrent client",
        epilog="example:\n  torrent-client debian.torrent ~/Downloads another.torrent /destination",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("args", nargs="*", metavar="file.torrent destination_dir")
    return parser


def _load(storage: Storage, pairs: list[tuple[str, str]]) -> None:
    for torrent_name, destination in pairs:
        torrent_path = Path(torrent_name).absolute()
        destination_path = Path(destination).absolute()
        try:
            torrent = TorrentFile.open(str(torrent_path), str(destination_path))
        except (OSError, TorrentError, BencodeError) as exc:
            raise RuntimeError(f"unable to open torrent file: {exc}") from exc
        try:
            storage.add(torrent)
        except (OSError, StorageError) as exc:
            raise RuntimeError(f"unable to add torrent to storage: {exc}") from exc


async def _run(storage: Storage, table: ProgressTable) -> None:
    client = Client(peer_id_from_string(PEER_ID), LISTEN_PORT, storage)
    tasks = {
        asyncio.create_task(client.run()),
        asyncio.create_task(run_ui(table, client.progress_speed(), client.progress_pieces())),
    }
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()


def main(argv: Sequence[str] | None = None) -> int:
    """Download and seed the given torrents, showing progress in the terminal."""
    parser = _build_parser()
    options = parser.parse_args(argv)
    try:
        pairs = parse_pairs(options.args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        log_file = open_log_file()
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    handler = logging.StreamHandler(log_file)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(filename)s:%(lineno)d > %(message)s")
    )
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    try:
        with log_file, Storage() as storage:
            _load(storage, pairs)
            table = ProgressTable(storage)
            asyncio.run(_run(storage, table))
    except KeyboardInterrupt:
        return 0
    except Exception as exc:  # reported to the user, like any command failure
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
    return 0
"""The client: trackers, listener and peer managers for every torrent in storage."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Iterable, Sequence

from .download import BlockGenerators, create_block_generators
from .events import ProgressConnRead, ProgressPieceDownloaded, ProgressSpeed
from .listener import Listener
from .manager import PeerManager
from .peer import Peer, find_alive, find_alive_by_info_hash_and_ip
from .storage import Storage
from .tracker import Tracker

SPEED_WINDOW = 20
SPEED_TICK = 1.0
CLEANUP_INTERVAL = 30.0
PROGRESS_QUEUE_SIZE = 512

_logger = logging.getLogger(__name__)


def shift_and_add(window: Sequence[int], value: int) -> tuple[int, ...]:
    """Drop the oldest value of ``window`` and append ``value``."""
    return (*window[1:], value)


def average_speed(window: Sequence[int]) -> int:
    """Average bytes per second over the speed window."""
    return sum(window) // SPEED_WINDOW


def _retrieve(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _until_first_error(tasks: Iterable[asyncio.Task]) -> None:
    """Wait for all tasks; the first failure cancels the rest and is raised."""
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
    finally:
        await _cancel_all(pending)


async def _until_first_done(tasks: Iterable[asyncio.Task]) -> None:
    """Wait until any task ends, cancel the rest and raise its error if it had one."""
    pending = set(tasks)
    try:
        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
    finally:
        await _cancel_all(pending)


class Client:
    """Downloads and seeds every torrent in a storage."""

    def __init__(self, peer_id: bytes, port: int, storage: Storage) -> None:
        self._peer_id = bytes(peer_id)
        self._port = port
        self._storage = storage
        self._peers_queue: asyncio.Queue[list[Peer]] = asyncio.Queue(len(storage))
        self._managers: list[PeerManager] = []
        self._block_generators: BlockGenerators | None = None
        self._progress_conn_reads: asyncio.Queue[ProgressConnRead] = asyncio.Queue(PROGRESS_QUEUE_SIZE)
        self._progress_pieces: asyncio.Queue[ProgressPieceDownloaded] = asyncio.Queue(PROGRESS_QUEUE_SIZE)
        # speed updates are dropped when nobody keeps up with them
        self._progress_speed: asyncio.Queue[ProgressSpeed] = asyncio.Queue(max(1, len(storage)))

    def progress_speed(self) -> "asyncio.Queue[ProgressSpeed]":
        return self._progress_speed

    def progress_pieces(self) -> "asyncio.Queue[ProgressPieceDownloaded]":
        return self._progress_pieces

    async def run(self) -> None:
        """Run until cancelled or until a tracker fails; the storage is closed afterwards."""
        try:
            listener = Listener(_logger)
            try:
                await listener.listen(self._port)
            except OSError as exc:
                raise OSError(exc.errno, f"unable to start listener: {exc.strerror or exc}") from exc
            try:
                self._block_generators = create_block_generators(self._storage)
                await self._send_initial_progress()
                speed = asyncio.create_task(self._calculate_download_speed())
                try:
                    tasks = [
                        asyncio.create_task(
                            Tracker(data.torrent, self._peer_id, self._port, self._peers_queue).run()
                        )
                        for data in self._storage
                    ]
                    tasks.append(asyncio.create_task(self._manage_peers(listener)))
                    await _until_first_error(tasks)
                finally:
                    await _cancel_all([speed])
            finally:
                listener.close()
        finally:
            self._storage.close()

    async def _send_initial_progress(self) -> None:
        for data in self._storage:
            await self._progress_pieces.put(
                ProgressPieceDownloaded(data.info_hash(), data.bitfield.downloaded_pieces_count())
            )

    def _start_manager(self, peer: Peer, running: set[asyncio.Task]) -> None:
        assert self._block_generators is not None
        manager = PeerManager(
            self._peer_id,
            self._storage,
            peer,
            self._block_generators,
            self._progress_conn_reads,
            self._progress_pieces,
        )
        self._managers.append(manager)
        task = asyncio.create_task(manager.run())
        running.add(task)
        task.add_done_callback(running.discard)
        task.add_done_callback(_retrieve)

    async def _accept_peers(self, listener: Listener, running: set[asyncio.Task]) -> None:
        async for conn in listener.connections():
            peername = conn.writer.get_extra_info("peername")
            if not peername:
                conn.close()
                continue
            self._start_manager(Peer(ip=peername[0], port=peername[1], conn=conn), running)

    async def _connect_peers(self, running: set[asyncio.Task]) -> None:
        while True:
            peers = await self._peers_queue.get()
            for peer in peers:
                if not find_alive_by_info_hash_and_ip(self._managers, peer.info_hash, peer.ip):
                    self._start_manager(peer, running)

    async def _cleanup_dead(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            before = len(self._managers)
            self._managers = find_alive(self._managers)
            _logger.info(
                "dead peers cleanup: dead=%d alive=%d", before - len(self._managers), len(self._managers)
            )

    async def _manage_peers(self, listener: Listener) -> None:
        running: set[asyncio.Task] = set()
        try:
            await _until_first_done(
                [
                    asyncio.create_task(self._accept_peers(listener, running)),
                    asyncio.create_task(self._connect_peers(running)),
                    asyncio.create_task(self._cleanup_dead()),
                ]
            )
        finally:
            await _cancel_all(running)

    def _publish_speeds(self, bytes_by_hash: dict[bytes, int], windows: dict[bytes, tuple[int, ...]]) -> None:
        for info_hash, count in bytes_by_hash.items():
            window = shift_and_add(windows.get(info_hash, (0,) * SPEED_WINDOW), count)
            windows[info_hash] = window
            try:
                self._progress_speed.put_nowait(ProgressSpeed(info_hash, average_speed(window)))
            except asyncio.QueueFull:
                pass
            bytes_by_hash[info_hash] = 0

    async def _calculate_download_speed(self) -> None:
        loop = asyncio.get_running_loop()
        bytes_by_hash: dict[bytes, int] = {}
        windows: dict[bytes, tuple[int, ...]] = {}
        next_tick = loop.time() + SPEED_TICK
        while True:
            remaining = next_tick - loop.time()
            if remaining <= 0:
                self._publish_speeds(bytes_by_hash, windows)
                next_tick = max(next_tick + SPEED_TICK, loop.time())
                continue
            try:
                async with asyncio.timeout(remaining):
                    event = await self._progress_conn_reads.get()
            except TimeoutError:
                continue
            bytes_by_hash[event.info_hash] = bytes_by_hash.get(event.info_hash, 0) + event.bytes_read
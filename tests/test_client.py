import asyncio
import hashlib
import random
import socket

import pytest
from aiohttp import web

from tinytorrent.bencode import encode
from tinytorrent.client import SPEED_WINDOW, Client, average_speed, shift_and_add
from tinytorrent.faketracker import FakeTracker
from tinytorrent.peer import peer_id_from_string
from tinytorrent.storage import Storage
from tinytorrent.torrent import TorrentFile

PIECE_LENGTH = 32768


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _torrent_bytes(content, announce):
    hashes = b"".join(
        hashlib.sha1(content[offset:offset + PIECE_LENGTH]).digest()
        for offset in range(0, len(content), PIECE_LENGTH)
    )
    return encode(
        {
            "announce": announce,
            "info": {"name": "cat.bin", "length": len(content), "piece length": PIECE_LENGTH, "pieces": hashes},
        }
    )


def _client(data, download_dir, peer_id, port):
    torrent = TorrentFile.from_bytes(data, "cat.bin.torrent", str(download_dir))
    storage = Storage()
    storage.add(torrent)
    return Client(peer_id_from_string(peer_id), port, storage), torrent


def test_shift_and_add_drops_oldest():
    window = tuple(range(SPEED_WINDOW))
    shifted = shift_and_add(window, 99)
    assert len(shifted) == SPEED_WINDOW
    assert shifted[:-1] == window[1:]
    assert shifted[-1] == 99
    assert window == tuple(range(SPEED_WINDOW))


def test_average_speed_of_constant_window():
    assert average_speed((7,) * SPEED_WINDOW) == 7


def test_average_speed_of_empty_window_is_zero():
    assert average_speed((0,) * SPEED_WINDOW) == 0


def test_average_speed_truncates():
    window = shift_and_add((0,) * SPEED_WINDOW, SPEED_WINDOW - 1)
    assert average_speed(window) == 0


@pytest.mark.asyncio
async def test_run_fails_when_port_is_taken():
    with socket.socket() as blocker:
        blocker.bind(("0.0.0.0", 0))
        blocker.listen()
        port = blocker.getsockname()[1]
        client = Client(peer_id_from_string("-PY0001-random_bytes"), port, Storage())
        with pytest.raises(OSError, match="unable to start listener"):
            await client.run()


async def _wait_until(predicate, timeout=5.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_client_downloads_from_seeding_peer(tmp_path):
    content = random.Random(0).randbytes(100_000)
    tracker = FakeTracker("127.0.0.1", 0)
    runner = web.AppRunner(tracker.app())
    await runner.setup()
    tasks = []
    try:
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        tracker_port = runner.addresses[0][1]
        data = _torrent_bytes(content, f"http://127.0.0.1:{tracker_port}/announce")

        remote_dir = tmp_path / "remote"
        local_dir = tmp_path / "local"
        remote_dir.mkdir()
        (remote_dir / "cat.bin").write_bytes(content)

        seeder, torrent = _client(data, remote_dir, "-PY0001-remote_peer0", _free_port())
        leecher, _ = _client(data, local_dir, "-PY0001-local_peer00", _free_port())
        pieces = torrent.pieces_count()

        tasks.append(asyncio.create_task(seeder.run()))
        seeder_initial = await asyncio.wait_for(seeder.progress_pieces().get(), 5)
        assert seeder_initial.downloaded_count == pieces
        await _wait_until(lambda: tracker.encode_peers(torrent.info_hash))

        tasks.append(asyncio.create_task(leecher.run()))
        leecher_initial = await asyncio.wait_for(leecher.progress_pieces().get(), 5)
        assert leecher_initial.downloaded_count == 0

        async with asyncio.timeout(20):
            while True:
                event = await leecher.progress_pieces().get()
                assert event.info_hash == torrent.info_hash
                if event.downloaded_count == pieces:
                    break
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await runner.cleanup()

    downloaded = (local_dir / "cat.bin").read_bytes()
    assert hashlib.sha256(downloaded).hexdigest() == hashlib.sha256(content).hexdigest()
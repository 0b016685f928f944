import asyncio
import hashlib
import random

import pytest

from tinytorrent.bencode import encode
from tinytorrent.bitfield import MalformedBitfieldError
from tinytorrent.download import BLOCK_SIZE, BlockGenerators, create_block_generators
from tinytorrent.events import ProgressConnRead
from tinytorrent.handshake import HANDSHAKE_LEN, Handshake, HandshakeError
from tinytorrent.manager import PeerManager
from tinytorrent.message import Message, MessageId
from tinytorrent.peer import Connection, Peer, find_alive, find_alive_by_info_hash_and_ip
from tinytorrent.storage import Storage
from tinytorrent.torrent import TorrentFile

PIECE_LENGTH = 2 * BLOCK_SIZE
CONTENT = random.Random(0).randbytes(4 * PIECE_LENGTH + 1000)
PIECES = 5
LOCAL_ID = b"-GO0001-randombytes1"
REMOTE_ID = b"-GO0001-randombytes2"
# the local client sends its bitfield (4 + 1 + 1 bytes) and an unchoke (5 bytes) first
OPENING_MESSAGES_LEN = 6 + 5


def _make_torrent(download_dir):
    hashes = b"".join(
        hashlib.sha1(CONTENT[i:i + PIECE_LENGTH]).digest() for i in range(0, len(CONTENT), PIECE_LENGTH)
    )
    meta = {
        b"announce": b"http://localhost:8080/announce",
        b"info": {
            b"name": b"data.bin",
            b"length": len(CONTENT),
            b"piece length": PIECE_LENGTH,
            b"pieces": hashes,
        },
    }
    return TorrentFile.from_bytes(encode(meta), "data.torrent", str(download_dir))


async def _start_server(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_download_from_seeder(tmp_path):
    seed_dir = tmp_path / "remote"
    seed_dir.mkdir()
    (seed_dir / "data.bin").write_bytes(CONTENT)
    seed_storage = Storage()
    seed_storage.add(_make_torrent(seed_dir))
    seed_bgs = create_block_generators(seed_storage)

    local_torrent = _make_torrent(tmp_path / "local")
    local_storage = Storage()
    local_storage.add(local_torrent)
    local_bgs = create_block_generators(local_storage)

    seeders = []
    seeder_tasks = []

    async def on_conn(reader, writer):
        host, port = writer.get_extra_info("peername")[:2]
        manager = PeerManager(
            REMOTE_ID, seed_storage, Peer(ip=host, port=port, conn=Connection(reader, writer)), seed_bgs
        )
        seeders.append(manager)
        seeder_tasks.append(asyncio.create_task(manager.run()))

    server, port = await _start_server(on_conn)
    progress = asyncio.Queue()
    downloader = PeerManager(
        LOCAL_ID,
        local_storage,
        Peer(info_hash=local_torrent.info_hash, ip="127.0.0.1", port=port),
        local_bgs,
        asyncio.Queue(),
        progress,
    )
    try:
        assert downloader.is_alive()
        assert downloader.info_hash() == local_torrent.info_hash
        task = asyncio.create_task(downloader.run())
        async with asyncio.timeout(20):
            counts = [(await progress.get()).downloaded_count for _ in range(PIECES)]
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not downloader.is_alive()
        assert counts == [1, 2, 3, 4, 5]
        assert local_storage.get(local_torrent.info_hash).bitfield.is_completed()

        async with asyncio.timeout(5):
            with pytest.raises(ConnectionError):
                await seeder_tasks[0]
        assert not seeders[0].is_alive()
        assert (tmp_path / "local" / "data.bin").read_bytes() == CONTENT
    finally:
        server.close()
        local_storage.close()
        seed_storage.close()


@pytest.mark.asyncio
async def test_keep_alive_is_counted_and_closed_connection_ends_run(tmp_path):
    torrent = _make_torrent(tmp_path)
    storage = Storage()
    storage.add(torrent)

    async def fake_peer(reader, writer):
        theirs = Handshake.decode(await reader.readexactly(HANDSHAKE_LEN))
        writer.write(Handshake(theirs.info_hash, REMOTE_ID).encode())
        await reader.readexactly(OPENING_MESSAGES_LEN)
        writer.write(b"\x00\x00\x00\x00")
        await writer.drain()
        writer.close()

    server, port = await _start_server(fake_peer)
    reads = asyncio.Queue()
    manager = PeerManager(
        LOCAL_ID,
        storage,
        Peer(info_hash=torrent.info_hash, ip="127.0.0.1", port=port),
        create_block_generators(storage),
        reads,
        asyncio.Queue(),
    )
    try:
        async with asyncio.timeout(10):
            with pytest.raises(ConnectionError):
                await manager.run()
        assert not manager.is_alive()
        assert reads.get_nowait() == ProgressConnRead(torrent.info_hash, 4)
        assert reads.empty()
    finally:
        server.close()
        storage.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"\xff\xff", b"\x0f"])
async def test_malformed_bitfield_kills_manager(tmp_path, payload):
    torrent = _make_torrent(tmp_path)
    storage = Storage()
    storage.add(torrent)

    async def fake_peer(reader, writer):
        theirs = Handshake.decode(await reader.readexactly(HANDSHAKE_LEN))
        writer.write(Handshake(theirs.info_hash, REMOTE_ID).encode())
        await reader.readexactly(OPENING_MESSAGES_LEN)
        writer.write(Message(MessageId.BITFIELD, payload).encode())
        await writer.drain()
        await reader.read()
        writer.close()

    server, port = await _start_server(fake_peer)
    manager = PeerManager(
        LOCAL_ID,
        storage,
        Peer(info_hash=torrent.info_hash, ip="127.0.0.1", port=port),
        create_block_generators(storage),
    )
    try:
        async with asyncio.timeout(10):
            with pytest.raises(MalformedBitfieldError):
                await manager.run()
        assert not manager.is_alive()
    finally:
        server.close()
        storage.close()


@pytest.mark.asyncio
async def test_incoming_handshake_for_unknown_torrent(tmp_path):
    torrent = _make_torrent(tmp_path)
    storage = Storage()
    storage.add(torrent)
    accepted = asyncio.get_running_loop().create_future()

    async def on_conn(reader, writer):
        accepted.set_result(Connection(reader, writer))

    server, port = await _start_server(on_conn)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        unknown_hash = b"\x07" * 20
        writer.write(Handshake(unknown_hash, REMOTE_ID).encode())
        await writer.drain()
        conn = await asyncio.wait_for(accepted, 5)
        manager = PeerManager(
            LOCAL_ID, storage, Peer(ip="127.0.0.1", port=1, conn=conn), create_block_generators(storage)
        )
        async with asyncio.timeout(10):
            with pytest.raises(HandshakeError, match="not found"):
                await manager.run()
        assert not manager.is_alive()
        assert manager.info_hash() == unknown_hash
    finally:
        writer.close()
        server.close()
        storage.close()


@pytest.mark.asyncio
async def test_managers_collection_and_single_run():
    hash1 = b"\x01" + bytes(19)

    async def refuse(host, port):
        raise ConnectionRefusedError("refused")

    def make(ip, connect=None):
        return PeerManager(bytes(20), Storage(), Peer(info_hash=hash1, ip=ip), BlockGenerators(), connect=connect)

    hash1_ip1_alive = make("1.0.0.0")
    another_hash1_ip1_alive = make("1.0.0.0")
    hash1_ip2_alive = make("2.0.0.0")
    hash1_ip2_dead = make("2.0.0.0", refuse)

    with pytest.raises(HandshakeError, match="unable to establish conn"):
        await hash1_ip2_dead.run()
    assert not hash1_ip2_dead.is_alive()
    assert await hash1_ip2_dead.run() is None

    managers = [hash1_ip1_alive, another_hash1_ip1_alive, hash1_ip2_alive, hash1_ip2_dead]
    assert find_alive(managers) == [hash1_ip1_alive, another_hash1_ip1_alive, hash1_ip2_alive]
    assert find_alive_by_info_hash_and_ip(managers, hash1, "1.0.0.0") == [
        hash1_ip1_alive,
        another_hash1_ip1_alive,
    ]
    assert find_alive_by_info_hash_and_ip(managers, hash1, "2.0.0.0") == [hash1_ip2_alive]
import hashlib
import queue
import random
import threading
import time

import pytest

from tinytorrent.bencode import encode
from tinytorrent.bitfield import Bitfield
from tinytorrent.divide import divide
from tinytorrent.download import (
    BLOCK_SIZE,
    Block,
    BlockGenerator,
    BlockGenerators,
    NoMoreBlocksError,
    RequestedBlocks,
    create_block_generators,
)
from tinytorrent.storage import Storage
from tinytorrent.torrent import TorrentFile

PIECE_SIZE = 262144
TOTAL_SIZE = 8 * PIECE_SIZE + 1000
PIECES_COUNT = -(-TOTAL_SIZE // PIECE_SIZE)


def _setup():
    buf = random.Random(1).randbytes(TOTAL_SIZE)
    hashes = [hashlib.sha1(buf[i * PIECE_SIZE:(i + 1) * PIECE_SIZE]).digest() for i in range(PIECES_COUNT)]
    return buf, hashes


def _make_torrent(download_dir, content, piece_length):
    pieces = b"".join(
        hashlib.sha1(content[i:i + piece_length]).digest() for i in range(0, len(content), piece_length)
    )
    meta = {
        "announce": "http://127.0.0.1:8080/announce",
        "info": {"name": "data.bin", "length": len(content), "piece length": piece_length, "pieces": pieces},
    }
    return TorrentFile.from_bytes(encode(meta), "data.torrent", str(download_dir))


def test_block_generator_concurrent_download():
    reader, hashes = _setup()
    bitfield = Bitfield(PIECES_COUNT)
    assert not bitfield.is_completed()
    generator = BlockGenerator(divide(TOTAL_SIZE, [PIECE_SIZE, BLOCK_SIZE]), bitfield)

    deadline = time.monotonic() + 30
    generated = []
    failures = []

    def consume():
        while time.monotonic() < deadline:
            try:
                block = generator.generate()
            except NoMoreBlocksError:
                return
            if block is not None:
                generated.append(block)
            time.sleep(0.002)
        failures.append("generator did not finish")

    items = queue.Queue()
    for item in divide(TOTAL_SIZE, [PIECE_SIZE, BLOCK_SIZE]):
        items.put(item)

    def mark():
        while True:
            try:
                item = items.get_nowait()
            except queue.Empty:
                return
            block = Block(item.parent_index, item.begin, item.length)
            verified = generator.mark_as_downloaded(block, reader, hashes[block.piece_index], PIECE_SIZE)
            if verified and not bitfield.has(block.piece_index):
                failures.append(f"piece {block.piece_index} verified but not set")

    threads = [threading.Thread(target=consume) for _ in range(4)]
    threads += [threading.Thread(target=mark) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    assert failures == []
    assert all(block.length > 0 for block in generated)
    assert bitfield.is_completed()


def test_block_generators_load():
    items = divide(TOTAL_SIZE, [PIECE_SIZE, BLOCK_SIZE])
    bitfield = Bitfield(PIECES_COUNT)
    first = BlockGenerator(items, bitfield)
    second = BlockGenerator(items, bitfield)
    generators = BlockGenerators()
    generators.store(bytes([1]) + bytes(19), first)
    generators.store(bytes([2]) + bytes(19), second)
    assert generators.load(bytes([1]) + bytes(19)) is first
    assert generators.load(bytes([2]) + bytes(19)) is second
    assert generators.load(bytes([2]) + bytes(19)) is not first
    assert generators.load(bytes([3]) + bytes(19)) is None


def test_generator_without_blocks_is_finished():
    bitfield = Bitfield(2)
    bitfield.set(0)
    bitfield.set(1)
    generator = BlockGenerator(divide(2 * BLOCK_SIZE, [BLOCK_SIZE, BLOCK_SIZE]), bitfield)
    with pytest.raises(NoMoreBlocksError):
        generator.generate()


def test_generator_skips_pieces_already_present():
    bitfield = Bitfield(3)
    bitfield.set(1)
    generator = BlockGenerator(divide(3 * BLOCK_SIZE, [BLOCK_SIZE, BLOCK_SIZE]), bitfield)
    seen = {generator.generate().piece_index for _ in range(6)}
    assert seen == {0, 2}


def test_failed_verification_requeues_piece():
    data = random.Random(2).randbytes(2 * BLOCK_SIZE)
    good_hash = hashlib.sha1(data).digest()
    bitfield = Bitfield(1)
    generator = BlockGenerator(divide(len(data), [len(data), BLOCK_SIZE]), bitfield)
    blocks = [Block(0, 0, BLOCK_SIZE), Block(0, BLOCK_SIZE, BLOCK_SIZE)]

    assert generator.mark_as_downloaded(blocks[0], bytes(len(data)), good_hash, len(data)) is False
    assert generator.mark_as_downloaded(blocks[1], bytes(len(data)), good_hash, len(data)) is False
    assert not bitfield.has(0)
    assert {generator.generate() for _ in range(2)} == set(blocks)

    assert generator.mark_as_downloaded(blocks[0], data, good_hash, len(data)) is False
    assert generator.mark_as_downloaded(blocks[1], data, good_hash, len(data)) is True
    assert bitfield.is_completed()
    with pytest.raises(NoMoreBlocksError):
        generator.generate()


def test_mark_unknown_or_repeated_block():
    data = bytes(2 * BLOCK_SIZE)
    bitfield = Bitfield(1)
    generator = BlockGenerator(divide(len(data), [len(data), BLOCK_SIZE]), bitfield)
    piece_hash = hashlib.sha1(data).digest()
    assert generator.mark_as_downloaded(Block(0, 1, 5), data, piece_hash, len(data)) is False
    assert generator.mark_as_downloaded(Block(0, 0, BLOCK_SIZE), data, piece_hash, len(data)) is False
    assert generator.mark_as_downloaded(Block(0, 0, BLOCK_SIZE), data, piece_hash, len(data)) is False
    assert generator.generate() == Block(0, BLOCK_SIZE, BLOCK_SIZE)


def test_requested_blocks():
    requested = RequestedBlocks()
    first, second = Block(0, 0, BLOCK_SIZE), Block(1, BLOCK_SIZE, BLOCK_SIZE)
    requested.add(first)
    requested.add(second)
    assert first in requested
    assert len(requested) == 2
    assert set(requested) == {first, second}
    assert requested.len_non_expired(60) == 2
    assert requested.len_non_expired(0) == 0
    requested.discard(first)
    requested.discard(first)
    assert first not in requested
    assert list(requested) == [second]


def test_create_block_generators(tmp_path):
    content = random.Random(3).randbytes(3 * BLOCK_SIZE + 100)
    fresh = _make_torrent(tmp_path / "fresh", content, BLOCK_SIZE)
    done = _make_torrent(tmp_path / "done", content[::-1], BLOCK_SIZE)
    (tmp_path / "done").mkdir()
    (tmp_path / "done" / "data.bin").write_bytes(content[::-1])
    with Storage() as storage:
        storage.add(fresh)
        storage.add(done)
        generators = create_block_generators(storage)
        block = generators.load(fresh.info_hash).generate()
        assert 0 <= block.piece_index < fresh.pieces_count()
        with pytest.raises(NoMoreBlocksError):
            generators.load(done.info_hash).generate()
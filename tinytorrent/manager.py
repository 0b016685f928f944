"""Talking to one remote peer: handshake, message exchange, download and upload."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import struct
from typing import Any, Iterable

from . import message as wire
from .bitfield import Bitfield
from .download import Block, BlockGenerator, BlockGenerators, NoMoreBlocksError, RequestedBlocks
from .events import ProgressConnRead, ProgressPieceDownloaded
from .handshake import HandshakeError
from .message import Message, MessageId
from .peer import Connect, Connection, Peer
from .storage import Storage, TorrentData

MESSAGE_QUEUE_SIZE = 512
BITFIELD_WAIT = 3.0
WRITE_TIMEOUT = 10.0
REQUEST_EXPIRATION = 5.0
DOWNLOAD_TICK = 1.0
UPLOAD_TICK = 0.002
IDLE_WAIT = 1.0
_MIN_GROW_FACTOR = 1
_INITIAL_GROW_FACTOR = 4
_ALWAYS_ALLOWED = frozenset({MessageId.BITFIELD, MessageId.UNCHOKE, MessageId.INTERESTED})

_logger = logging.getLogger(__name__)


class _ChokedError(Exception):
    """The remote peer chokes us, so the message may not be sent."""


def _grow(factor: int) -> int:
    return factor * factor if factor < 5 else 5 * factor


def _message_id(raw: int) -> int:
    try:
        return MessageId(raw)
    except ValueError:
        return raw


def _unpack(fmt: str, payload: bytes, what: str) -> tuple[int, ...]:
    try:
        return struct.unpack_from(fmt, payload)
    except struct.error as exc:
        raise ValueError(f"malformed {what} message") from exc


async def _read_exact(reader: asyncio.StreamReader, size: int) -> bytes:
    try:
        return await reader.readexactly(size)
    except asyncio.IncompleteReadError as exc:
        raise ConnectionError("connection closed by remote peer") from exc


async def _supervise(tasks: Iterable[asyncio.Task]) -> None:
    """Wait for all tasks; on the first failure cancel the rest and raise it."""
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
    finally:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


class PeerManager:
    """Runs the whole conversation with one remote peer of one torrent."""

    def __init__(
        self,
        client_id: bytes,
        storage: Storage,
        peer: Peer,
        block_generators: BlockGenerators,
        progress_conn_reads: "asyncio.Queue[ProgressConnRead] | None" = None,
        progress_pieces: "asyncio.Queue[ProgressPieceDownloaded] | None" = None,
        connect: Connect | None = None,
    ) -> None:
        self.peer = peer
        self._client_id = bytes(client_id)
        self._storage = storage
        self._block_generators = block_generators
        self._progress_conn_reads = progress_conn_reads
        self._progress_pieces = progress_pieces
        self._connect = connect

        self._started = False
        self._alive = True
        self._choked = True
        self._am_interested = False
        self._peer_interested = False

        self._data: TorrentData | None = None
        self._generator: BlockGenerator | None = None
        self._peer_bitfield: Bitfield | None = None
        self._bitfield_seen = False
        self._bitfield_received = asyncio.Event()
        self._first_request = asyncio.Event()
        self._incoming: asyncio.Queue[Message] = asyncio.Queue(MESSAGE_QUEUE_SIZE)
        self._outgoing: asyncio.Queue[Message] = asyncio.Queue(MESSAGE_QUEUE_SIZE)
        self._my_requested = RequestedBlocks()
        self._peer_requested = RequestedBlocks()
        self._handlers = {
            MessageId.CHOKE: self._on_choke,
            MessageId.UNCHOKE: self._on_unchoke,
            MessageId.INTERESTED: self._on_interested,
            MessageId.NOT_INTERESTED: self._on_not_interested,
            MessageId.HAVE: self._on_have,
            MessageId.BITFIELD: self._on_bitfield,
            MessageId.REQUEST: self._on_request,
            MessageId.PIECE: self._on_piece,
            MessageId.CANCEL: self._on_cancel,
            MessageId.PORT: self._on_port,
        }

    def is_alive(self) -> bool:
        return self._alive

    def info_hash(self) -> bytes:
        return self.peer.info_hash

    def _log(self, level: int, text: str, *args: Any) -> None:
        _logger.log(level, "[%s %s] " + text, self.peer.address(), self.peer.info_hash.hex(), *args)

    async def run(self) -> None:
        """Talk to the peer until the connection fails or the task is cancelled.

        Only the first call does anything; the manager is dead afterwards.
        """
        if self._started:
            return
        self._started = True
        try:
            await self._run()
        except BaseException as exc:
            self._log(logging.ERROR, "peer manager is dying: %r", exc)
            raise
        else:
            self._log(logging.INFO, "peer manager is dying")
        finally:
            self._alive = False
            if self.peer.conn is not None:
                self.peer.conn.close()

    async def _run(self) -> None:
        if self.peer.conn is None:
            try:
                await self.peer.send_handshake(self._client_id, self._connect)
            except HandshakeError as exc:
                raise HandshakeError(f"unable to send handshake to remote peer: {exc}") from exc
            data = self._storage.get(self.peer.info_hash)
            if data is None:
                raise HandshakeError(f"torrent with info hash {self.peer.info_hash.hex()} not found")
        else:
            try:
                data = await self.peer.accept_handshake(self._storage, self._client_id)
            except HandshakeError as exc:
                raise HandshakeError(f"unable to accept handshake from remote peer: {exc}") from exc
        self._data = data
        self._log(logging.INFO, "successful handshake")
        self._generator = self._block_generators.load(self.peer.info_hash)
        if self._generator is None:
            raise LookupError(f"no block generator for info hash {self.peer.info_hash.hex()}")

        await _supervise([
            asyncio.create_task(self._read_messages()),
            asyncio.create_task(self._write_messages()),
            asyncio.create_task(self._handle_messages()),
            asyncio.create_task(self._exchange()),
        ])

    def _connection(self) -> Connection:
        assert self.peer.conn is not None
        return self.peer.conn

    async def _exchange(self) -> None:
        assert self._data is not None
        await self._try_send(wire.bitfield_message(self._data.bitfield))
        await self._try_send(wire.unchoke())
        await self._wait_for_bitfield()
        await self._check_am_interested()
        await _supervise([
            asyncio.create_task(self._download()),
            asyncio.create_task(self._upload()),
        ])

    async def _report_read(self, count: int) -> None:
        if self._progress_conn_reads is not None:
            await self._progress_conn_reads.put(ProgressConnRead(self.peer.info_hash, count))

    async def _read_messages(self) -> None:
        reader = self._connection().reader
        while True:
            prefix = await _read_exact(reader, 4)
            length = int.from_bytes(prefix, "big")
            if length == 0:
                await self._report_read(len(prefix))
                continue
            body = await _read_exact(reader, length)
            await self._report_read(len(prefix) + length)
            await self._incoming.put(Message(_message_id(body[0]), body[1:]))

    async def _send(self, message: Message) -> None:
        if self._choked and message.message_id not in _ALWAYS_ALLOWED:
            raise _ChokedError("i am choking")
        self._log(logging.DEBUG, "msg sent: id=%s payload=%d bytes", int(message.message_id), len(message.payload))
        await self._outgoing.put(message)

    async def _try_send(self, message: Message) -> bool:
        try:
            await self._send(message)
        except _ChokedError:
            return False
        return True

    async def _write_messages(self) -> None:
        writer = self._connection().writer
        while True:
            message = await self._outgoing.get()
            writer.write(message.encode())
            async with asyncio.timeout(WRITE_TIMEOUT):
                await writer.drain()

    async def _handle_messages(self) -> None:
        while True:
            message = await self._incoming.get()
            self._log(
                logging.DEBUG, "msg received: id=%s payload=%d bytes", int(message.message_id), len(message.payload)
            )
            handler = self._handlers.get(message.message_id)
            if handler is None:
                self._log(
                    logging.WARNING, "unknown message id %d, payload %s", int(message.message_id), message.payload.hex()
                )
                continue
            await handler(message)

    async def _wait_for_bitfield(self) -> None:
        """Wait for the peer's bitfield; assume it has nothing if none arrives in time."""
        assert self._data is not None
        try:
            async with asyncio.timeout(BITFIELD_WAIT):
                await self._bitfield_received.wait()
        except TimeoutError:
            empty = Bitfield(self._data.torrent.pieces_count())
            await self._on_bitfield(wire.bitfield_message(empty))

    async def _check_am_interested(self) -> None:
        assert self._data is not None and self._peer_bitfield is not None
        is_interested = self._data.bitfield.interested(self._peer_bitfield)
        was_interested, self._am_interested = self._am_interested, is_interested
        if is_interested != was_interested:
            await self._try_send(wire.interested() if is_interested else wire.not_interested())

    async def _download(self) -> None:
        loop = asyncio.get_running_loop()
        grow_factor = _INITIAL_GROW_FACTOR
        next_tick = loop.time() + DOWNLOAD_TICK
        while True:
            if self._choked or not self._am_interested:
                await asyncio.sleep(IDLE_WAIT)
                continue
            if await self._request_blocks(_grow(grow_factor)):
                return
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick = max(next_tick, loop.time()) + DOWNLOAD_TICK
            # a block not received within the expiration is assumed never to arrive
            if self._my_requested.len_non_expired(REQUEST_EXPIRATION) > 0:
                grow_factor -= 1
            else:
                grow_factor += 1
            grow_factor = max(grow_factor, _MIN_GROW_FACTOR)

    async def _request_blocks(self, count: int) -> bool:
        """Request up to ``count`` blocks; return True once the torrent is complete."""
        assert self._data is not None and self._generator is not None and self._peer_bitfield is not None
        own = self._data.bitfield
        seen: set[Block] = set()
        requested = 0
        while requested < count:
            try:
                block = self._generator.generate()
            except NoMoreBlocksError:
                self._log(logging.INFO, "download completed, %d requested messages left", len(self._my_requested))
                for pending in self._my_requested:
                    await self._try_send(wire.cancel(pending))
                return True
            if block is None or block in seen:
                break
            seen.add(block)
            if (
                not own.has(block.piece_index)
                and self._peer_bitfield.has(block.piece_index)
                and block not in self._my_requested
            ):
                if not await self._try_send(wire.request(block)):
                    break
                self._my_requested.add(block)
                requested += 1
        return False

    async def _upload(self) -> None:
        assert self._data is not None
        await self._first_request.wait()
        torrent = self._data.torrent
        total = torrent.total_length()
        while True:
            await asyncio.sleep(UPLOAD_TICK)
            if self._choked or not self._peer_interested:
                await asyncio.sleep(IDLE_WAIT)
                continue
            for block in self._peer_requested:
                if block not in self._peer_requested:
                    continue  # cancelled by the peer meanwhile
                offset = block.piece_index * torrent.piece_length + block.begin
                if offset < 0 or offset >= total:
                    raise EOFError(f"requested block at {offset} is out of range")
                length = min(block.length, total - offset)
                data = self._data.read_at(length, offset)
                if len(data) < length:
                    raise EOFError(f"unable to read {length} bytes at {offset}")
                if not await self._try_send(wire.piece(block, data)):
                    continue
                self._peer_requested.discard(block)

    async def _on_choke(self, _message: Message) -> None:
        self._choked = True

    async def _on_unchoke(self, _message: Message) -> None:
        self._choked = False

    async def _on_interested(self, _message: Message) -> None:
        self._peer_interested = True

    async def _on_not_interested(self, _message: Message) -> None:
        self._peer_interested = False

    async def _on_have(self, message: Message) -> None:
        assert self._data is not None
        (index,) = _unpack(">I", message.payload, "have")
        if self._peer_bitfield is None:
            self._bitfield_seen = True
            self._peer_bitfield = Bitfield(self._data.torrent.pieces_count())
            self._bitfield_received.set()
        # a wrong piece index from the peer is ignored
        with contextlib.suppress(IndexError):
            self._peer_bitfield.set(index)
        await self._check_am_interested()

    async def _on_bitfield(self, message: Message) -> None:
        assert self._data is not None
        if self._bitfield_seen:
            return
        self._bitfield_seen = True
        self._peer_bitfield = Bitfield.from_payload(message.payload, self._data.torrent.pieces_count())
        self._bitfield_received.set()

    async def _on_request(self, message: Message) -> None:
        self._first_request.set()
        index, begin, length = _unpack(">III", message.payload, "request")
        self._peer_requested.add(Block(index, begin, length))

    async def _on_piece(self, message: Message) -> None:
        assert self._data is not None and self._generator is not None
        data_store = self._data
        torrent = data_store.torrent
        index, begin = _unpack(">II", message.payload, "piece")
        if data_store.bitfield.has(index):
            self._log(logging.WARNING, "block of piece %d discarded", index)
            return
        data = bytes(message.payload[8:])
        data_store.write_at(data, index * torrent.piece_length + begin)
        block = Block(index, begin, len(data))
        verified = self._generator.mark_as_downloaded(
            block, data_store, torrent.piece_hashes[index], torrent.piece_length
        )
        self._my_requested.discard(block)
        if verified and self._progress_pieces is not None:
            await self._progress_pieces.put(
                ProgressPieceDownloaded(torrent.info_hash, data_store.bitfield.downloaded_pieces_count())
            )
        self._log(logging.DEBUG, "block of piece %d downloaded, %d bytes", index, len(data))

    async def _on_cancel(self, message: Message) -> None:
        index, begin, length = _unpack(">III", message.payload, "cancel")
        self._peer_requested.discard(Block(index, begin, length))

    async def _on_port(self, _message: Message) -> None:
        return None
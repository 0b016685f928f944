"""Remote peers, their connections and handshake exchange."""

from __future__ import annotations

import asyncio
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from .handshake import HANDSHAKE_LEN, PEER_ID_SIZE, Handshake, HandshakeError
from .torrent import HASH_SIZE

HANDSHAKE_TIMEOUT = 10.0

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass
class Connection:
    """An open TCP connection to a peer."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()


Connect = Callable[[str, int], Awaitable[Connection]]


async def _open_connection(host: str, port: int) -> Connection:
    reader, writer = await asyncio.open_connection(host, port)
    return Connection(reader, writer)


def _normalize_ip(ip: Any) -> IPAddress | None:
    if ip is None:
        return None
    address = ip if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(ip)
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def peer_id_from_string(text: str) -> bytes:
    """Turn a 20-character peer id into bytes."""
    raw = text.encode("utf-8")
    if len(raw) != PEER_ID_SIZE:
        raise ValueError(f"peer id must be {PEER_ID_SIZE} bytes, got {len(raw)}")
    return raw


@dataclass
class Peer:
    """A remote peer of one torrent, possibly already connected."""

    info_hash: bytes = bytes(HASH_SIZE)
    ip: IPAddress | None = None
    port: int = 0
    conn: Connection | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        self.info_hash = bytes(self.info_hash)
        if len(self.info_hash) != HASH_SIZE:
            raise ValueError(f"info hash must be {HASH_SIZE} bytes")
        self.ip = _normalize_ip(self.ip)

    def address(self) -> str:
        if isinstance(self.ip, ipaddress.IPv6Address):
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"

    async def send_handshake(self, client_id: bytes, connect: Connect | None = None) -> None:
        """Connect to the peer, send our handshake and check the one it answers with."""
        if self.ip is None:
            raise HandshakeError("unable to establish conn: peer has no IP address")
        opener = connect or _open_connection
        async with asyncio.timeout(HANDSHAKE_TIMEOUT):
            try:
                self.conn = await opener(str(self.ip), self.port)
            except OSError as exc:
                raise HandshakeError(f"unable to establish conn: {exc}") from exc
            try:
                self.conn.writer.write(Handshake(self.info_hash, client_id).encode())
                await self.conn.writer.drain()
            except OSError as exc:
                raise HandshakeError(f"unable to write handshake: {exc}") from exc
            try:
                raw = await self.conn.reader.readexactly(HANDSHAKE_LEN)
            except (asyncio.IncompleteReadError, OSError) as exc:
                raise HandshakeError(f"unable to read handshake: {exc}") from exc
            try:
                Handshake.decode(raw, self.info_hash)
            except HandshakeError as exc:
                raise HandshakeError(f"unable to decode handshake: {exc}") from exc

    async def accept_handshake(self, storage: Any, client_id: bytes) -> Any:
        """Read the handshake of a peer that connected to us and answer it.

        Returns the torrent data that ``storage`` holds for the announced info hash.
        """
        if self.conn is None:
            raise HandshakeError("peer has no connection")
        async with asyncio.timeout(HANDSHAKE_TIMEOUT):
            try:
                raw = await self.conn.reader.readexactly(HANDSHAKE_LEN)
            except (asyncio.IncompleteReadError, OSError) as exc:
                raise HandshakeError(f"unable to read handshake: {exc}") from exc
            try:
                theirs = Handshake.decode(raw, self.info_hash)
            except HandshakeError as exc:
                raise HandshakeError(f"unable to decode handshake: {exc}") from exc
            self.info_hash = theirs.info_hash
            data = storage.get(self.info_hash)
            if data is None:
                raise HandshakeError(f"torrent with info hash {self.info_hash.hex()} not found")
            try:
                self.conn.writer.write(Handshake(self.info_hash, client_id).encode())
                await self.conn.writer.drain()
            except OSError as exc:
                raise HandshakeError(f"unable to write handshake: {exc}") from exc
            return data


def find_alive(managers: Iterable[Any]) -> list[Any]:
    """Managers that are still running, in their original order."""
    return [manager for manager in managers if manager.is_alive()]


def find_alive_by_info_hash_and_ip(managers: Iterable[Any], info_hash: bytes, ip: Any) -> list[Any]:
    """Running managers talking to ``ip`` about the torrent ``info_hash``."""
    wanted_hash = bytes(info_hash)
    wanted_ip = _normalize_ip(ip)
    return [
        manager
        for manager in managers
        if manager.peer.info_hash == wanted_hash
        and _normalize_ip(manager.peer.ip) == wanted_ip
        and manager.is_alive()
    ]
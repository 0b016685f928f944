"""A small in-memory HTTP tracker, handy for trying clients out locally."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import ipaddress
import logging
import re
import signal
import threading
from typing import Any, Mapping, Sequence
from urllib.parse import unquote_plus, unquote_to_bytes

from aiohttp import web

from .bencode import encode
from .peer import Peer
from .torrent import HASH_SIZE
from .tracker import TrackerEvent

ANNOUNCE_INTERVAL = 30
DEFAULT_HOST = ""
DEFAULT_PORT = 8080
_PORT = re.compile(rb"[0-9]+")
_MAX_PORT = 0xFFFF

_logger = logging.getLogger(__name__)


def _field(query: Mapping[str, Any], name: str) -> bytes:
    value = query.get(name)
    if value is None:
        return b""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _parse_raw_query(raw: str) -> dict[str, bytes]:
    """Split a raw query string, keeping values as bytes and the first of repeated keys."""
    query: dict[str, bytes] = {}
    for pair in raw.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        query.setdefault(unquote_plus(key), unquote_to_bytes(value.replace("+", " ")))
    return query


def _failure(reason: str) -> bytes:
    return encode({"failure reason": reason})


class FakeTracker:
    """Remembers announcing peers per info hash and hands them out in compact form."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        self.host = host
        self.port = port
        self._lock = threading.Lock()
        self._peers: dict[bytes, dict[str, Peer]] = {}

    def add_peer(self, peer: Peer) -> None:
        with self._lock:
            self._peers.setdefault(peer.info_hash, {})[peer.address()] = peer

    def delete_peer(self, peer: Peer) -> None:
        with self._lock:
            peers = self._peers.get(peer.info_hash)
            if peers is not None:
                peers.pop(peer.address(), None)

    def encode_peers(self, info_hash: bytes) -> bytes:
        """Compact peer list of a torrent: 4 bytes of IPv4 address and 2 of port each.

        Peers without an IPv4 address cannot be written compactly and are left out.
        """
        with self._lock:
            peers = list(self._peers.get(bytes(info_hash), {}).values())
        return b"".join(
            peer.ip.packed + peer.port.to_bytes(2, "big")
            for peer in peers
            if isinstance(peer.ip, ipaddress.IPv4Address)
        )

    def announce(self, query: Mapping[str, Any], remote_ip: str | None) -> bytes:
        """Handle one announce and return the bencoded response body."""
        info_hash = _field(query, "info_hash")
        if len(info_hash) != HASH_SIZE:
            return _failure("invalid info hash")
        raw_port = _field(query, "port")
        if not _PORT.fullmatch(raw_port) or int(raw_port) > _MAX_PORT:
            return _failure("invalid port")
        try:
            ip = ipaddress.ip_address(remote_ip)
        except ValueError:
            return _failure("invalid id")
        peer = Peer(info_hash=info_hash, ip=ip, port=int(raw_port))

        if _field(query, "event") == TrackerEvent.STOPPED.value.encode():
            _logger.info("delete %s", peer.address())
            self.delete_peer(peer)
        else:
            _logger.info("add %s", peer.address())
            self.add_peer(peer)
        body = encode(
            {
                "interval": ANNOUNCE_INTERVAL,
                "complete": 0,
                "incomplete": 0,
                "peers": self.encode_peers(info_hash),
            }
        )
        with self._lock:
            _logger.debug(
                "peers: %s",
                {key.hex(): sorted(peers) for key, peers in self._peers.items()},
            )
        return body

    async def _handle_announce(self, request: web.Request) -> web.Response:
        query = _parse_raw_query(request.rel_url.raw_query_string)
        body = self.announce(query, request.remote)
        return web.Response(body=body, content_type="text/plain")

    def app(self) -> web.Application:
        """The web application serving ``/announce``."""
        application = web.Application()
        application.router.add_get("/announce", self._handle_announce)
        return application

    async def serve(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self.app())
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host or None, self.port)
            await site.start()
            _logger.info("fake tracker listening on %s:%d", self.host or "*", self.port)
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


async def _serve_until_signal(tracker: FakeTracker) -> None:
    task = asyncio.create_task(tracker.serve())
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, task.cancel)
    with contextlib.suppress(asyncio.CancelledError):
        await task


def main(argv: Sequence[str] | None = None) -> int:
    """Run the fake tracker until interrupted."""
    parser = argparse.ArgumentParser(prog="faketracker", description="In-memory HTTP tracker.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="address to listen on (default: all)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to listen on")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    tracker = FakeTracker(args.host, args.port)
    try:
        asyncio.run(_serve_until_signal(tracker))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(exc)
        return 1
    return 0
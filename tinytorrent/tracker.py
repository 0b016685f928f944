"""Announcing to an HTTP tracker and collecting peers from it."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from .bencode import BencodeError, decode
from .peer import Peer
from .torrent import TorrentFile

DEFAULT_INTERVAL = 900.0
REQUEST_TIMEOUT = 5.0
_PEER_SIZE = 6


class TrackerError(Exception):
    """Raised when the tracker cannot be reached or answers badly."""


class TrackerEvent(StrEnum):
    STARTED = "started"
    REGULAR = ""
    COMPLETED = "completed"
    STOPPED = "stopped"


@dataclass
class TrackerResponse:
    """What a tracker answered to an announce; intervals are in seconds."""

    info_hash: bytes
    warning: str = ""
    interval: float = DEFAULT_INTERVAL
    min_interval: float = 0.0
    tracker_id: str = ""
    peers: list[Peer] = field(default_factory=list)

    @classmethod
    def parse(cls, data: Any, info_hash: bytes) -> "TrackerResponse":
        """Parse a bencoded (or already decoded) announce response with compact peers."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            try:
                data = decode(bytes(data))
            except BencodeError as exc:
                raise TrackerError(f"unable to decode bencode: {exc}") from exc
        if not isinstance(data, dict):
            raise TrackerError("response must be a dictionary")
        for key in (b"failure reason", b"failure"):
            failure = data.get(key)
            if isinstance(failure, bytes):
                raise TrackerError(f"failure: {failure.decode('utf-8', 'replace')}")

        response = cls(info_hash=bytes(info_hash))
        warning = data.get(b"warning message", data.get(b"warning"))
        if isinstance(warning, bytes):
            response.warning = warning.decode("utf-8", "replace")
        interval = data.get(b"interval")
        if isinstance(interval, int):
            response.interval = float(interval)
        min_interval = data.get(b"min interval", data.get(b"minInterval"))
        if isinstance(min_interval, int):
            response.min_interval = float(min_interval)
        tracker_id = data.get(b"tracker id")
        if isinstance(tracker_id, bytes):
            response.tracker_id = tracker_id.decode("utf-8", "replace")

        peers = data.get(b"peers")
        if not isinstance(peers, bytes):
            raise TrackerError("peers must be bytes")
        if len(peers) % _PEER_SIZE:
            raise TrackerError("malformed peers bytes")
        response.peers = [
            Peer(
                info_hash=response.info_hash,
                ip=ipaddress.IPv4Address(peers[offset:offset + 4]),
                port=int.from_bytes(peers[offset + 4:offset + _PEER_SIZE], "big"),
            )
            for offset in range(0, len(peers), _PEER_SIZE)
        ]
        return response


class Tracker:
    """Announces one torrent periodically and puts each peer list on a queue."""

    def __init__(
        self,
        torrent: TorrentFile,
        peer_id: bytes,
        port: int,
        peers_queue: "asyncio.Queue[list[Peer]]",
    ) -> None:
        self.torrent = torrent
        self.peer_id = bytes(peer_id)
        self.port = port
        self.peers_queue = peers_queue
        self.interval = 0.0

    def build_url(self, event: TrackerEvent) -> str:
        """The announce URL for ``event``, with the query replaced by our parameters."""
        try:
            parts = urlsplit(self.torrent.announce)
        except ValueError as exc:
            raise TrackerError(f"unable to build tracker url: {exc}") from exc
        params = {
            "info_hash": bytes(self.torrent.info_hash),
            "peer_id": self.peer_id,
            "port": str(self.port),
            "uploaded": "0",
            "downloaded": "0",
            "compact": "1",
            "left": str(self.torrent.total_length()),
            "event": TrackerEvent(event).value,
            "numwant": "100",
        }
        return urlunsplit(parts._replace(query=urlencode(sorted(params.items()))))

    async def _request(
        self, session: aiohttp.ClientSession, event: TrackerEvent
    ) -> TrackerResponse | None:
        url = self.build_url(event)
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)) as resp:
                if event is TrackerEvent.STOPPED:
                    return None
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TrackerError(f"unable to send http request: {exc}") from exc
        return TrackerResponse.parse(body, self.torrent.info_hash)

    async def _handle_event(self, session: aiohttp.ClientSession, event: TrackerEvent) -> None:
        try:
            response = await self._request(session, event)
        except TrackerError as exc:
            raise TrackerError(f"tracker: {exc}") from exc
        assert response is not None
        if event is TrackerEvent.STARTED:
            self.interval = response.interval
        await self.peers_queue.put(response.peers)

    async def run(self) -> None:
        """Announce ``started``, then re-announce every interval until cancelled.

        A ``stopped`` announce is sent on the way out once ``started`` succeeded.
        """
        async with aiohttp.ClientSession() as session:
            await self._handle_event(session, TrackerEvent.STARTED)
            try:
                if self.interval <= 0:
                    raise TrackerError("tracker: interval must be positive")
                while True:
                    await asyncio.sleep(self.interval)
                    await self._handle_event(session, TrackerEvent.REGULAR)
            finally:
                with contextlib.suppress(TrackerError):
                    await self._request(session, TrackerEvent.STOPPED)
"""Accepting incoming peer connections."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from .peer import Connection


class AlreadyListeningError(RuntimeError):
    """Raised when a listener is asked to listen a second time."""

    def __init__(self) -> None:
        super().__init__("already listened")


class NothingToCloseError(RuntimeError):
    """Raised when a listener that is not listening is closed."""

    def __init__(self) -> None:
        super().__init__("nothing to close")


class Listener:
    """Listens on one TCP port and hands out incoming connections.

    A listener listens at most once in its lifetime.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._listened = False
        self._closed = False
        self._server: asyncio.Server | None = None
        self._queue: asyncio.Queue[Connection | None] = asyncio.Queue()

    async def listen(self, port: int) -> int:
        """Start listening on ``port`` on all IPv4 interfaces; return the bound port."""
        if self._listened:
            raise AlreadyListeningError()
        self._listened = True
        try:
            self._server = await asyncio.start_server(self._accept, host="0.0.0.0", port=port)
        except OSError as exc:
            raise OSError(exc.errno, f"unable to listen port {port}: {exc.strerror or exc}") from exc
        return self._server.sockets[0].getsockname()[1]

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._closed:
            writer.close()
            return
        self._logger.info(
            "incoming connection from remote peer %s", writer.get_extra_info("peername")
        )
        self._queue.put_nowait(Connection(reader, writer))

    async def connections(self) -> AsyncIterator[Connection]:
        """Yield incoming connections until the listener is closed."""
        while True:
            conn = await self._queue.get()
            if conn is None:
                self._queue.put_nowait(None)
                return
            yield conn

    def close(self) -> None:
        """Stop listening and end every ``connections()`` iteration."""
        if self._server is None:
            raise NothingToCloseError()
        server, self._server = self._server, None
        self._closed = True
        server.close()
        self._queue.put_nowait(None)
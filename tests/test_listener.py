import asyncio

import pytest

from tinytorrent.listener import AlreadyListeningError, Listener, NothingToCloseError

MESSAGE = b"hello"


@pytest.mark.asyncio
async def test_listen():
    num_conns = 20
    listener = Listener()
    async with asyncio.timeout(10):
        port = await listener.listen(0)
        for _ in range(num_conns):
            _, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(MESSAGE)
            await writer.drain()
            writer.close()
            await writer.wait_closed()

        incoming = listener.connections()
        received = [await anext(incoming) for _ in range(num_conns)]
        data = [await conn.reader.read() for conn in received]
        for conn in received:
            conn.close()
        listener.close()

        assert data == [MESSAGE] * num_conns
        with pytest.raises(StopAsyncIteration):
            await anext(incoming)

    with pytest.raises(AlreadyListeningError):
        await listener.listen(0)


@pytest.mark.asyncio
async def test_close():
    listener = Listener()
    port = await listener.listen(0)
    assert port > 0
    listener.close()
    with pytest.raises(NothingToCloseError):
        listener.close()


def test_close_without_listening():
    with pytest.raises(NothingToCloseError, match="nothing to close"):
        Listener().close()


@pytest.mark.asyncio
async def test_connections_end_for_every_iterator_after_close():
    listener = Listener()
    await listener.listen(0)
    listener.close()
    first = [conn async for conn in listener.connections()]
    second = [conn async for conn in listener.connections()]
    assert first == [] and second == []
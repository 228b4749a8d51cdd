from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from localcluster.config import BootConfig
from localcluster.network import (
    BootServer,
    disable_network,
    ensure_network_enabled,
    get_cookie,
)
from localcluster.protocol import Failed, Hello, Ok, Ping, Rejected, Welcome, read_frame, write_frame


@pytest.fixture
async def boot() -> AsyncIterator[BootServer]:
    server = await ensure_network_enabled()
    yield server
    await disable_network()


async def connect(server: BootServer, name: str, cookie: str, pid: int = 1234):
    host, port = server.address
    reader, writer = await asyncio.open_connection(host, port)
    await write_frame(writer, Hello(name=name, pid=pid, cookie=cookie))
    reply = await read_frame(reader)
    return reader, writer, reply


async def test_enabling_is_idempotent(boot: BootServer) -> None:
    again = await ensure_network_enabled()
    assert again is boot
    assert boot.is_serving


async def test_concurrent_enabling_starts_one_server() -> None:
    await disable_network()
    servers = await asyncio.gather(*(ensure_network_enabled() for _ in range(5)))
    assert len({id(s) for s in servers}) == 1
    await disable_network()


async def test_disable_then_enable_starts_fresh_server(boot: BootServer) -> None:
    await disable_network()
    assert not boot.is_serving
    fresh = await ensure_network_enabled()
    assert fresh is not boot
    assert fresh.is_serving


def test_cookie_is_stable() -> None:
    assert get_cookie() == get_cookie()
    assert len(get_cookie()) >= 16


async def test_valid_member_is_welcomed_and_registered(boot: BootServer) -> None:
    waiter = boot.expect("m1")
    _, writer, reply = await connect(boot, "m1", get_cookie(), pid=77)

    assert reply == Welcome(node="m1")
    conn = await asyncio.wait_for(waiter, timeout=1.0)
    assert conn.node == "m1"
    assert conn.pid == 77
    assert boot.connection("m1") is conn
    writer.close()


async def test_bad_cookie_is_rejected(boot: BootServer) -> None:
    _, writer, reply = await connect(boot, "m2", "wrong")
    assert isinstance(reply, Rejected)
    assert "cookie" in reply.reason
    assert boot.connection("m2") is None
    writer.close()


async def test_duplicate_name_is_rejected(boot: BootServer) -> None:
    _, first, reply = await connect(boot, "dup", get_cookie())
    assert isinstance(reply, Welcome)
    _, second, reply = await connect(boot, "dup", get_cookie())
    assert isinstance(reply, Rejected)
    first.close()
    second.close()


async def test_disallowed_host_is_rejected() -> None:
    server = BootServer(BootConfig(allowed_hosts=("10.9.9.9",)), cookie="secret")
    await server.start()
    try:
        _, writer, reply = await connect(server, "m3", "secret")
        assert isinstance(reply, Rejected)
        assert "not allowed" in reply.reason
        writer.close()
    finally:
        await server.close()


async def test_request_reply_over_member_connection(boot: BootServer) -> None:
    waiter = boot.expect("m4")
    reader, writer, _ = await connect(boot, "m4", get_cookie())
    conn = await asyncio.wait_for(waiter, timeout=1.0)

    async def member_side() -> None:
        first = await read_frame(reader)
        await write_frame(writer, Ok(request_id=first.request_id, value="pong"))
        second = await read_frame(reader)
        await write_frame(writer, Failed(request_id=second.request_id, error="nope"))

    task = asyncio.create_task(member_side())
    assert await conn.request(Ping(), timeout=1.0) == Ok(request_id=1, value="pong")
    assert await conn.request(Ping(), timeout=1.0) == Failed(request_id=2, error="nope")
    await task
    writer.close()


async def test_pending_request_fails_when_member_disconnects(boot: BootServer) -> None:
    waiter = boot.expect("m5")
    reader, writer, _ = await connect(boot, "m5", get_cookie())
    conn = await asyncio.wait_for(waiter, timeout=1.0)

    async def hang_up() -> None:
        await read_frame(reader)
        writer.close()

    task = asyncio.create_task(hang_up())
    with pytest.raises(ConnectionError):
        await conn.request(Ping(), timeout=2.0)
    await task
    await asyncio.wait_for(conn.wait_closed(), timeout=1.0)
    assert boot.connection("m5") is None
    assert "m5" not in boot.registered


async def test_request_times_out(boot: BootServer) -> None:
    waiter = boot.expect("m6")
    _, writer, _ = await connect(boot, "m6", get_cookie())
    conn = await asyncio.wait_for(waiter, timeout=1.0)
    with pytest.raises(TimeoutError):
        await conn.request(Ping(), timeout=0.1)
    writer.close()


async def test_closed_connections_are_dropped_from_the_server(boot: BootServer) -> None:
    for node in ("m9a", "m9b"):
        waiter = boot.expect(node)
        _, writer, _ = await connect(boot, node, get_cookie())
        conn = await asyncio.wait_for(waiter, timeout=1.0)
        assert node in boot.registered
        writer.close()
        await asyncio.wait_for(conn.wait_closed(), timeout=1.0)

    assert not {"m9a", "m9b"} & set(boot.registered)

"""End-to-end tests with real member interpreters."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator

import pytest

from localcluster import ByNode, ClusterOptions, LocalCluster, MemberExited
from localcluster.network import disable_network, ensure_network_enabled
from localcluster.protocol import GetEnv, Ok, Ping


@pytest.fixture(autouse=True)
async def network() -> AsyncIterator[None]:
    yield
    await disable_network()


def is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def test_create_stop_grow_and_destroy() -> None:
    options = ClusterOptions(prefix="x", environment={"lc_itest": {"greeting": "hi"}})
    cluster = await LocalCluster.start(3, options)
    try:
        assert await cluster.nodes() == ["x1", "x2", "x3"]
        pids = await cluster.pids()
        assert all(is_alive(pid) for pid in pids)

        x2 = (await cluster.members())[1]
        await cluster.stop_member(ByNode("x2"))
        assert not is_alive(x2.pid)
        assert await cluster.nodes() == ["x1", "x3"]

        added = await cluster.grow(2)
        assert [m.node for m in added] == ["x4", "x5"]
        assert await cluster.nodes() == ["x1", "x3", "x4", "x5"]

        boot = await ensure_network_enabled()
        for node in ("x1", "x5"):
            conn = boot.connection(node)
            assert conn is not None
            reply = await conn.request(GetEnv(service="lc_itest"), timeout=5.0)
            assert isinstance(reply, Ok)
            assert reply.value == {"greeting": "hi"}
            assert (await conn.request(Ping(), timeout=5.0)).value == node

        remaining = await cluster.pids()
    finally:
        await cluster.stop()

    assert not any(is_alive(pid) for pid in remaining)


async def test_killed_member_brings_cluster_down() -> None:
    cluster = await LocalCluster.start(2, ClusterOptions(prefix="k"))
    k1, k2 = await cluster.members()

    os.kill(k1.pid, signal.SIGKILL)
    reason = await asyncio.wait_for(cluster.wait_terminated(), timeout=10.0)

    assert isinstance(reason, MemberExited)
    assert reason.node == "k1"
    assert not is_alive(k2.pid)
    await cluster.stop()

from __future__ import annotations

import asyncio
import importlib
import logging
import sys
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest

from localcluster import services
from localcluster.member import MemberState, parse_args, run
from localcluster.network import BootServer, disable_network, ensure_network_enabled, get_cookie
from localcluster.protocol import (
    Failed,
    GetEnv,
    LoadFile,
    Ok,
    Ping,
    SetCodePaths,
    SetEnv,
    SetLogLevel,
    SetMode,
    Shutdown,
    StartServices,
)
from localcluster.services import ServiceRegistry


@pytest.fixture
def state() -> MemberState:
    return MemberState("m1", ServiceRegistry())


async def test_set_code_paths_appends_new_entries(
    state: MemberState, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(sys, "path", ["/already"])
    await state.apply(SetCodePaths(paths=("/already", str(tmp_path))))
    assert sys.path == ["/already", str(tmp_path)]


async def test_env_then_get_env(state: MemberState) -> None:
    await state.apply(SetEnv(env={"svc": {"a": 1}}))
    assert await state.apply(GetEnv(service="svc")) == {"a": 1}


async def test_start_services_returns_started(state: MemberState) -> None:
    assert await state.apply(StartServices(names=("localcluster",))) == ["logging", "localcluster"]
    assert await state.apply(StartServices(names=("localcluster",))) == []


async def test_log_level_and_mode(state: MemberState, monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(root, "level", root.level)
    monkeypatch.setattr(services, "_mode", None)
    monkeypatch.setenv(services.MODE_ENV_VAR, "test")

    await state.apply(SetLogLevel(level=logging.WARNING))
    await state.apply(SetMode(mode="ci"))

    assert root.level == logging.WARNING
    assert services.mode() == "ci"


@pytest.fixture
def loaded_modules() -> Iterator[list[str]]:
    names: list[str] = []
    yield names
    for name in names:
        sys.modules.pop(name, None)


async def test_load_file_runs_once(
    state: MemberState, tmp_path: Path, loaded_modules: list[str]
) -> None:
    loaded_modules.append("lc_runs_once")
    marker = tmp_path / "marker.txt"
    script = tmp_path / "lc_runs_once.py"
    script.write_text(
        f"from pathlib import Path\n"
        f"p = Path({str(marker)!r})\n"
        f"p.write_text(p.read_text() + 'x' if p.exists() else 'x')\n"
    )

    await state.apply(LoadFile(path=str(script)))
    await state.apply(LoadFile(path=str(script)))
    assert marker.read_text() == "x"


async def test_loaded_file_is_importable_by_name(
    state: MemberState, tmp_path: Path, loaded_modules: list[str]
) -> None:
    loaded_modules.append("lc_helpers")
    script = tmp_path / "lc_helpers.py"
    script.write_text("def helper():\n    return 'from helper'\n")

    await state.apply(LoadFile(path=str(script)))

    module = importlib.import_module("lc_helpers")
    assert module.helper() == "from helper"
    assert sys.modules["lc_helpers"] is module


async def test_failing_file_is_not_left_importable(
    state: MemberState, tmp_path: Path, loaded_modules: list[str]
) -> None:
    loaded_modules.append("lc_broken")
    script = tmp_path / "lc_broken.py"
    script.write_text("raise RuntimeError('broken on load')\n")

    with pytest.raises(RuntimeError, match="broken on load"):
        await state.apply(LoadFile(path=str(script)))
    assert "lc_broken" not in sys.modules


async def test_ping_returns_node(state: MemberState) -> None:
    assert await state.apply(Ping()) == "m1"


def test_parse_args() -> None:
    args = parse_args(["--name", "x1", "--loader", "127.0.0.1:4000", "--cookie", "c"])
    assert args.name == "x1"
    assert args.host == "127.0.0.1"
    assert args.hosts == "127.0.0.1"


@pytest.fixture
async def boot() -> AsyncIterator[BootServer]:
    server = await ensure_network_enabled()
    yield server
    await disable_network()


async def test_member_serves_commands_until_shutdown(boot: BootServer) -> None:
    waiter = boot.expect("inproc")
    args = parse_args(["--name", "inproc", "--loader", boot.loader, "--cookie", get_cookie()])
    member = asyncio.create_task(run(args))

    conn = await asyncio.wait_for(waiter, timeout=2.0)
    assert await conn.request(Ping(), timeout=2.0) == Ok(request_id=1, value="inproc")

    reply = await conn.request(StartServices(names=("no_such_service_abc",)), timeout=2.0)
    assert isinstance(reply, Failed)
    assert "no_such_service_abc" in reply.error

    assert await conn.request(Shutdown(), timeout=2.0) == Ok(request_id=3)
    assert await asyncio.wait_for(member, timeout=2.0) == 0


async def test_member_exits_when_connection_drops(boot: BootServer) -> None:
    waiter = boot.expect("orphan")
    args = parse_args(["--name", "orphan", "--loader", boot.loader, "--cookie", get_cookie()])
    member = asyncio.create_task(run(args))

    conn = await asyncio.wait_for(waiter, timeout=2.0)
    await conn.close()
    assert await asyncio.wait_for(member, timeout=2.0) == 0


async def test_member_gives_up_when_rejected(boot: BootServer) -> None:
    args = parse_args(["--name", "intruder", "--loader", boot.loader, "--cookie", "wrong"])
    assert await asyncio.wait_for(run(args), timeout=2.0) == 1


async def test_member_refuses_unlisted_boot_host(boot: BootServer) -> None:
    args = parse_args([
        "--name", "picky", "--loader", boot.loader, "--hosts", "10.0.0.1", "--cookie", get_cookie(),
    ])
    assert await run(args) == 2


async def test_member_logs_its_host_on_joining(
    boot: BootServer, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="localcluster.member")
    waiter = boot.expect("named")
    args = parse_args([
        "--name", "named", "--host", "127.0.0.1", "--loader", boot.loader, "--cookie", get_cookie(),
    ])
    member = asyncio.create_task(run(args))

    conn = await asyncio.wait_for(waiter, timeout=2.0)
    await conn.request(Ping(), timeout=2.0)
    assert "named@127.0.0.1" in caplog.text

    await conn.request(Shutdown(), timeout=2.0)
    assert await asyncio.wait_for(member, timeout=2.0) == 0

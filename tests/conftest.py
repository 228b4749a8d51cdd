"""Shared fixtures: in-memory launcher and channel doubles for controller tests."""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from typing import Any

import pytest

from localcluster.channel import BroadcastResult
from localcluster.errors import LaunchError
from localcluster.launcher import ExitCallback
from localcluster.membership import Member
from localcluster.protocol import Command


class FakeLauncher:
    """Launches nothing; hands out pids and records what happened."""

    def __init__(self, on_exit: ExitCallback, *, fail_on: set[str]) -> None:
        self.on_exit = on_exit
        self.fail_on = fail_on
        self.launched: list[str] = []
        self.args: list[tuple[str, tuple[str, ...]]] = []
        self.linked: dict[int, Member] = {}
        self.running: dict[int, Member] = {}
        self.torn_down: list[Member] = []
        self._pids = itertools.count(4000)

    async def launch(self, host: str, name: str, args: Sequence[str]) -> Member:
        self.launched.append(name)
        self.args.append((host, tuple(args)))
        if name in self.fail_on:
            raise LaunchError(name, "refused by test")
        member = Member(pid=next(self._pids), node=name)
        self.linked[member.pid] = member
        self.running[member.pid] = member
        return member

    def unlink(self, pid: int) -> bool:
        return self.linked.pop(pid, None) is not None

    async def teardown(self, pid: int) -> None:
        member = self.running.pop(pid, None)
        if member is not None:
            self.torn_down.append(member)

    def crash(self, node: str, returncode: int = 1) -> Member:
        member = next(m for m in self.running.values() if m.node == node)
        del self.running[member.pid]
        if self.linked.pop(member.pid, None) is not None:
            self.on_exit(member, returncode)
        return member


class FakeChannel:
    """Answers every command with success unless told to fail it."""

    def __init__(self) -> None:
        self.calls: list[tuple[tuple[str, ...], Command]] = []
        self.fail: dict[str, str] = {}

    async def invoke(self, nodes: Sequence[str], command: Command) -> BroadcastResult:
        self.calls.append((tuple(nodes), command))
        reason = self.fail.get(type(command).__name__)
        if reason is not None:
            return BroadcastResult(failures={node: reason for node in nodes})
        return BroadcastResult(replies={node: None for node in nodes})

    def commands(self) -> list[str]:
        return [type(command).__name__ for _, command in self.calls]


class FakeBackend:
    def __init__(self) -> None:
        self.fail_on: set[str] = set()
        self.channel = FakeChannel()
        self.launchers: list[FakeLauncher] = []

    @property
    def launcher(self) -> FakeLauncher:
        return self.launchers[-1]

    def factory(self, on_exit: ExitCallback) -> FakeLauncher:
        launcher = FakeLauncher(on_exit, fail_on=self.fail_on)
        self.launchers.append(launcher)
        return launcher

    def wiring(self) -> dict[str, Any]:
        return {"launcher": self.factory, "channel": self.channel}


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()

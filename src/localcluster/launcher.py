"""Instance launcher: spawns and tears down member interpreters.

Each member is a fresh ``python -m localcluster.member`` process. Launching
waits until the process has registered with the boot server, then links it
to the caller: if the process later exits while still linked, the
``on_exit`` callback fires. ``unlink`` breaks that relationship so an
intentional teardown is never reported as a crash.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from localcluster.config import ControllerConfig
from localcluster.errors import LaunchError
from localcluster.membership import Member
from localcluster.network import BootServer, MemberConnection
from localcluster.protocol import Shutdown

__all__ = ["ExitCallback", "Launcher", "MemberHandle", "ProcessLauncher"]

logger = logging.getLogger("localcluster.launcher")

type ExitCallback = Callable[[Member, int | None], None]


@dataclass(frozen=True)
class MemberHandle:
    member: Member
    process: asyncio.subprocess.Process
    connection: MemberConnection


class Launcher(Protocol):
    """What the controller needs from an instance launcher."""

    async def launch(self, host: str, name: str, args: Sequence[str]) -> Member: ...

    def unlink(self, pid: int) -> bool: ...

    async def teardown(self, pid: int) -> None: ...


def _member_env() -> dict[str, str]:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in sys.path if p)
    return env


class ProcessLauncher:
    """Launch members as local subprocesses registered with *boot*."""

    def __init__(
        self,
        boot: BootServer,
        *,
        on_exit: ExitCallback,
        config: ControllerConfig | None = None,
        python: str = sys.executable,
    ) -> None:
        self._boot = boot
        self._on_exit = on_exit
        self._config = config or ControllerConfig()
        self._python = python
        self._handles: dict[int, MemberHandle] = {}
        self._links: dict[int, asyncio.Task[None]] = {}

    def handle(self, pid: int) -> MemberHandle | None:
        return self._handles.get(pid)

    def linked(self) -> tuple[Member, ...]:
        return tuple(self._handles[pid].member for pid in self._links if pid in self._handles)

    async def launch(self, host: str, name: str, args: Sequence[str]) -> Member:
        """Start member *name* and link it; raises ``LaunchError`` on failure."""
        waiter = self._boot.expect(name)
        try:
            process = await asyncio.create_subprocess_exec(
                self._python, "-m", "localcluster.member",
                "--name", name, "--host", host, *args,
                env=_member_env(),
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            self._boot.forget(name)
            raise LaunchError(name, str(exc)) from exc

        exited = asyncio.get_running_loop().create_task(process.wait())
        done, _ = await asyncio.wait(
            {waiter, exited},
            timeout=self._config.launch_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if waiter not in done:
            self._boot.forget(name)
            if exited in done:
                raise LaunchError(name, f"exited with status {process.returncode} before registering")
            exited.cancel()
            await self._kill(process)
            raise LaunchError(name, f"did not register within {self._config.launch_timeout}s")

        exited.cancel()
        connection = waiter.result()
        if connection.pid != process.pid:
            await connection.close()
            await self._kill(process)
            raise LaunchError(name, f"registered as pid {connection.pid}, expected {process.pid}")

        member = Member(pid=process.pid, node=name)
        self._handles[process.pid] = MemberHandle(member, process, connection)
        self._links[process.pid] = asyncio.get_running_loop().create_task(
            self._watch(member, process)
        )
        logger.info("Launched member %s (pid %d)", name, process.pid)
        return member

    async def _watch(self, member: Member, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._links.pop(member.pid, None) is not None:
            logger.error("Linked member %s exited with status %s", member.node, returncode)
            self._on_exit(member, returncode)

    def unlink(self, pid: int) -> bool:
        """Break the link to *pid*. Returns ``False`` when there was none."""
        task = self._links.pop(pid, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def teardown(self, pid: int) -> None:
        """Ask member *pid* to shut down, killing it after ``stop_timeout``."""
        handle = self._handles.pop(pid, None)
        if handle is None:
            return
        self.unlink(pid)

        process = handle.process
        if process.returncode is None:
            try:
                await handle.connection.request(Shutdown(), timeout=self._config.stop_timeout)
            except (ConnectionError, TimeoutError):
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._config.stop_timeout)
            except TimeoutError:
                logger.warning("Member %s ignored shutdown, killing", handle.member.node)
                await self._kill(process)

        await handle.connection.close()
        logger.info("Stopped member %s (pid %d)", handle.member.node, pid)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

"""Member runtime: the entry point of every spawned interpreter.

Usage (started by the launcher, not by hand):
    python -m localcluster.member --name x1 --host 127.0.0.1 \
        --loader 127.0.0.1:40123 --hosts 127.0.0.1 --cookie <secret>

The member registers with the boot server named by ``--loader`` and then
serves commands from that connection until it receives ``Shutdown`` or the
connection goes away.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib.util
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from types import ModuleType
from typing import Any

from localcluster import services
from localcluster.behaviors import Behaviors
from localcluster.core.behavior import Behavior
from localcluster.core.context import ActorContext
from localcluster.core.system import ActorSystem
from localcluster.protocol import (
    COMMANDS,
    Command,
    Failed,
    GetEnv,
    Hello,
    LoadFile,
    Ok,
    Ping,
    Rejected,
    SetCodePaths,
    SetEnv,
    SetLogLevel,
    SetMode,
    Shutdown,
    StartServices,
    Welcome,
    read_frame,
    write_frame,
)


def load_module(path: Path) -> ModuleType:
    """Execute *path* as a module importable by its file stem."""
    spec = importlib.util.spec_from_file_location(path.stem, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[path.stem] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(path.stem, None)
        raise
    return module


class MemberState:
    """Process-local state a member mutates while applying commands."""

    def __init__(self, node: str, registry: services.ServiceRegistry) -> None:
        self.node = node
        self.registry = registry
        self.loaded_files: set[Path] = set()

    async def apply(self, command: Command) -> Any:
        match command:
            case SetCodePaths(paths=paths):
                for path in paths:
                    if path not in sys.path:
                        sys.path.append(path)
                return None
            case SetEnv(env=env):
                self.registry.set_env(env)
                return None
            case StartServices(names=names):
                return list(await self.registry.ensure_all_started(names))
            case SetLogLevel(level=level):
                logging.getLogger().setLevel(level)
                return None
            case SetMode(mode=mode):
                services.set_mode(mode)
                return None
            case LoadFile(path=path):
                resolved = Path(path).resolve()
                if resolved not in self.loaded_files:
                    load_module(resolved)
                    self.loaded_files.add(resolved)
                return None
            case GetEnv(service=service):
                return self.registry.get_all_env(service)
            case Ping():
                return self.node
            case Shutdown():
                return None
        raise TypeError(f"unsupported command {command!r}")


def member_behavior(
    state: MemberState,
    writer: asyncio.StreamWriter,
    done: asyncio.Event,
) -> Behavior[Command]:
    """Apply each command in arrival order and answer it."""

    async def receive(ctx: ActorContext[Command], msg: Command) -> Behavior[Command]:
        try:
            value = await state.apply(msg)
        except Exception as exc:
            ctx.log.warning("%s failed: %s", type(msg).__name__, exc)
            reply: Ok | Failed = Failed(request_id=msg.request_id, error=f"{type(exc).__name__}: {exc}")
        else:
            reply = Ok(request_id=msg.request_id, value=value)

        await write_frame(writer, reply)

        if isinstance(msg, Shutdown):
            ctx.log.info("Shutting down")
            done.set()
            return Behaviors.stopped()
        return Behaviors.same()

    return Behaviors.receive(receive)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="localcluster.member")
    parser.add_argument("--name", required=True)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--loader", required=True, help="boot server HOST:PORT")
    parser.add_argument("--hosts", default="127.0.0.1", help="comma-separated allowed boot hosts")
    parser.add_argument("--cookie", required=True)
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    log = logging.getLogger(f"localcluster.member.{args.name}")

    loader_host, loader_port = args.loader.rsplit(":", maxsplit=1)
    allowed = {h.strip() for h in args.hosts.split(",") if h.strip()}
    if loader_host not in allowed:
        log.error("Boot host %s is not in allowed hosts %s", loader_host, sorted(allowed))
        return 2

    reader, writer = await asyncio.open_connection(loader_host, int(loader_port))
    await write_frame(writer, Hello(name=args.name, pid=os.getpid(), cookie=args.cookie))

    match await read_frame(reader):
        case Welcome():
            log.info("Member %s@%s joined via %s", args.name, args.host, args.loader)
        case Rejected(reason=reason):
            log.error("Registration rejected: %s", reason)
            writer.close()
            return 1
        case other:
            log.error("Unexpected handshake reply %r", other)
            writer.close()
            return 1

    state = MemberState(args.name, services.default_registry)
    done = asyncio.Event()

    async with ActorSystem(name=f"member-{args.name}") as system:
        ref = system.spawn(member_behavior(state, writer, done), "member")

        async def pump() -> None:
            while True:
                frame = await read_frame(reader)
                if isinstance(frame, COMMANDS):
                    ref.tell(frame)
                else:
                    log.warning("Ignoring unexpected frame %r", frame)

        pump_task = asyncio.get_running_loop().create_task(pump())
        done_task = asyncio.get_running_loop().create_task(done.wait())
        await asyncio.wait({pump_task, done_task}, return_when=asyncio.FIRST_COMPLETED)

        if pump_task.done() and not done.is_set():
            exc = pump_task.exception()
            log.info("Controller connection lost (%s), exiting", exc)
        for task in (pump_task, done_task):
            task.cancel()
        await asyncio.gather(pump_task, done_task, return_exceptions=True)

    await services.default_registry.stop_all()
    writer.close()
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    sys.exit(asyncio.run(run(parse_args(argv))))


if __name__ == "__main__":
    main()

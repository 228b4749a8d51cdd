"""Cluster controller: one actor that owns a set of member interpreters.

The controller launches members named ``prefix + ordinal``, synchronizes
code paths, service environment, log level, runtime mode, services and
source files onto each new member, keeps the live member list and is
linked to every member it launched. A linked member that exits on its own
takes the whole cluster down with it.

``LocalCluster`` is the caller-facing handle. Every call is a request to
the controller actor, so concurrent callers are serialized by its mailbox.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
import string
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from localcluster import services
from localcluster.behaviors import Behaviors
from localcluster.channel import BroadcastChannel, Channel
from localcluster.config import ClusterOptions, ControllerConfig, LocalClusterConfig
from localcluster.core.behavior import Behavior
from localcluster.core.context import ActorContext
from localcluster.core.event_stream import Publish
from localcluster.core.messages import Terminated
from localcluster.core.ref import ActorRef
from localcluster.core.system import ActorSystem
from localcluster.errors import ClusterTerminated, LaunchError, LinkError, MemberExited, SyncError
from localcluster.launcher import ExitCallback, Launcher, ProcessLauncher
from localcluster.membership import Member, Selector, find, without
from localcluster.network import BootServer, ensure_network_enabled, get_cookie
from localcluster.protocol import (
    Command,
    LoadFile,
    SetCodePaths,
    SetEnv,
    SetLogLevel,
    SetMode,
    StartServices,
    command_name,
)

__all__ = [
    "AddMembers",
    "CallResult",
    "ClusterState",
    "Destroy",
    "GetMembers",
    "LocalCluster",
    "MemberAdded",
    "MemberCrashed",
    "MemberDown",
    "MemberRemoved",
    "StopMember",
    "cluster_controller",
    "derive_prefix",
    "merged_environment",
    "sync_commands",
]

logger = logging.getLogger("localcluster.cluster")

type LauncherFactory = Callable[[ExitCallback], Launcher]


@dataclass(frozen=True)
class ClusterState:
    index: int
    prefix: str
    members: tuple[Member, ...]
    options: ClusterOptions


# -- controller protocol ---------------------------------------------------


@dataclass(frozen=True)
class CallResult:
    value: Any = None
    error: Exception | None = None


@dataclass(frozen=True)
class GetMembers:
    reply_to: ActorRef[CallResult]


@dataclass(frozen=True)
class AddMembers:
    amount: int
    reply_to: ActorRef[CallResult]


@dataclass(frozen=True)
class StopMember:
    selector: Selector
    reply_to: ActorRef[CallResult]


@dataclass(frozen=True)
class Destroy:
    reply_to: ActorRef[CallResult]


@dataclass(frozen=True)
class MemberDown:
    member: Member
    returncode: int | None


type ControllerMsg = GetMembers | AddMembers | StopMember | Destroy | MemberDown


# -- events published on the system event stream ---------------------------


@dataclass(frozen=True)
class MemberAdded:
    member: Member


@dataclass(frozen=True)
class MemberRemoved:
    member: Member


@dataclass(frozen=True)
class MemberCrashed:
    member: Member
    returncode: int | None


def derive_prefix(options: ClusterOptions) -> str:
    if options.prefix:
        return options.prefix
    if options.name:
        return options.name
    return "".join(random.choices(string.ascii_lowercase, k=8))


def merged_environment(
    options: ClusterOptions,
    registry: services.ServiceRegistry = services.default_registry,
) -> dict[str, dict[str, Any]]:
    """Environment of every loaded service with the cluster's overrides on top.

    Services that only appear in the overrides are included as-is so that
    members starting them later still see their values.
    """
    merged: dict[str, dict[str, Any]] = {}
    for name in registry.loaded():
        merged[name] = {**registry.get_all_env(name), **options.environment.get(name, {})}
    for name, overrides in options.environment.items():
        merged.setdefault(name, dict(overrides))
    return merged


def sync_commands(
    options: ClusterOptions,
    registry: services.ServiceRegistry = services.default_registry,
) -> list[Command]:
    """Commands that bring a fresh member in line with this process, in order."""
    return [
        SetCodePaths(paths=tuple(sys.path)),
        SetEnv(env=merged_environment(options, registry)),
        StartServices(names=services.BOOTSTRAP_SERVICES),
        SetLogLevel(level=logging.getLogger().level),
        SetMode(mode=services.mode()),
        StartServices(names=options.applications),
        *(LoadFile(path=path) for path in options.files),
    ]


def cluster_controller(
    options: ClusterOptions,
    *,
    prefix: str,
    launcher_factory: LauncherFactory,
    channel: Channel,
    startup_args: Sequence[str] = (),
    config: ControllerConfig | None = None,
) -> Behavior[ControllerMsg]:
    """Behavior of the controller actor.

    Parameters
    ----------
    options : ClusterOptions
        Fixed for the controller's lifetime.
    prefix : str
        Prefix of every member name.
    launcher_factory : LauncherFactory
        Builds the launcher, given the callback it must invoke when a linked
        member exits.
    channel : Channel
        Broadcast channel used to synchronize new members.
    startup_args : Sequence[str]
        Extra arguments passed to every launched member.
    config : ControllerConfig | None
        Member host and timeouts.
    """
    host = (config or ControllerConfig()).host

    async def setup(ctx: ActorContext[ControllerMsg]) -> Behavior[ControllerMsg]:
        def on_exit(member: Member, returncode: int | None) -> None:
            ctx.self.tell(MemberDown(member, returncode))

        launcher = launcher_factory(on_exit)
        # every member this controller holds a link to, joined or not
        linked: dict[int, Member] = {}

        def publish(event: object) -> None:
            ctx.system.event_stream.tell(Publish(event))

        async def release(member: Member) -> None:
            linked.pop(member.pid, None)
            launcher.unlink(member.pid)
            await launcher.teardown(member.pid)

        async def release_all() -> None:
            for member in list(linked.values()):
                await release(member)

        async def launch(state: ClusterState, amount: int) -> list[Member]:
            launched: list[Member] = []
            for idx in range(1, amount + 1):
                name = f"{state.prefix}{state.index + idx}"
                try:
                    member = await launcher.launch(host, name, startup_args)
                except LaunchError:
                    for started in launched:
                        await release(started)
                    raise
                linked[member.pid] = member
                launched.append(member)
            return launched

        async def synchronize(nodes: list[str]) -> None:
            for command in sync_commands(options):
                result = await channel.invoke(nodes, command)
                if not result.ok:
                    raise SyncError(command_name(command), result.failures)

        def active(state: ClusterState) -> Behavior[ControllerMsg]:
            async def receive(
                ctx: ActorContext[ControllerMsg], msg: ControllerMsg
            ) -> Behavior[ControllerMsg]:
                match msg:
                    case GetMembers(reply_to=reply_to):
                        reply_to.tell(CallResult(state.members))
                        return Behaviors.same()

                    case AddMembers(amount=amount, reply_to=reply_to):
                        try:
                            new = await launch(state, amount)
                        except LaunchError as exc:
                            reply_to.tell(CallResult(error=exc))
                            return Behaviors.same()

                        try:
                            if new:
                                await synchronize([m.node for m in new])
                        except SyncError as exc:
                            ctx.log.error("Synchronizing %s failed: %s", [m.node for m in new], exc)
                            reply_to.tell(CallResult(error=exc))
                            # the unsynced members keep their names until destroyed
                            return active(replace(state, index=state.index + amount))

                        members = (*state.members, *new)
                        grown = replace(
                            state,
                            members=members,
                            index=max(len(members), state.index + amount),
                        )
                        for member in new:
                            publish(MemberAdded(member))
                        if new:
                            ctx.log.info("Added %s", ", ".join(m.node for m in new))
                        reply_to.tell(CallResult(without(grown.members, state.members)))
                        return active(grown)

                    case StopMember(selector=selector, reply_to=reply_to):
                        member = find(state.members, selector)
                        if member is None:
                            reply_to.tell(CallResult())
                            return Behaviors.same()

                        if not launcher.unlink(member.pid):
                            error = LinkError(f"member {member.node} (pid {member.pid}) is not linked")
                            reply_to.tell(CallResult(error=error))
                            raise error

                        linked.pop(member.pid, None)
                        await launcher.teardown(member.pid)
                        publish(MemberRemoved(member))
                        ctx.log.info("Removed %s", member.node)
                        reply_to.tell(CallResult())
                        return active(replace(state, members=without(state.members, [member])))

                    case Destroy(reply_to=reply_to):
                        await release_all()
                        ctx.log.info("Cluster %s destroyed", state.prefix)
                        reply_to.tell(CallResult())
                        return Behaviors.stopped()

                    case MemberDown(member=member, returncode=returncode):
                        if linked.pop(member.pid, None) is None:
                            return Behaviors.same()
                        ctx.log.error(
                            "Member %s (pid %d) went down with status %s, stopping cluster %s",
                            member.node, member.pid, returncode, state.prefix,
                        )
                        await release_all()
                        publish(MemberCrashed(member, returncode))
                        raise MemberExited(member.node, member.pid, returncode)

                return Behaviors.unhandled()

            return Behaviors.receive(receive)

        async def post_stop(ctx: ActorContext[ControllerMsg]) -> None:
            await release_all()

        initial = ClusterState(index=0, prefix=prefix, members=(), options=options)
        return Behaviors.with_lifecycle(active(initial), post_stop=post_stop)

    return Behaviors.setup(setup)


def termination_watcher(
    controller: ActorRef[Any],
    on_terminated: Callable[[], None],
) -> Behavior[Terminated]:
    async def setup(ctx: ActorContext[Terminated]) -> Behavior[Terminated]:
        ctx.watch(controller)

        async def receive(ctx: ActorContext[Terminated], msg: Terminated) -> Behavior[Terminated]:
            match msg:
                case Terminated():
                    on_terminated()
                    return Behaviors.stopped()
            return Behaviors.unhandled()

        return Behaviors.receive(receive)

    return Behaviors.setup(setup)


def _process_launcher(boot: BootServer, config: ControllerConfig) -> LauncherFactory:
    def factory(on_exit: ExitCallback) -> Launcher:
        return ProcessLauncher(boot, on_exit=on_exit, config=config)

    return factory


_watcher_ids = itertools.count(1)


class LocalCluster:
    """Handle to a running cluster controller.

    Create one with ``LocalCluster.start``; use ``async with`` to destroy
    the cluster on exit.

    Examples
    --------
    >>> async with await LocalCluster.start(3, ClusterOptions(prefix="x")) as cluster:
    ...     await cluster.nodes()
    ['x1', 'x2', 'x3']
    """

    def __init__(
        self,
        system: ActorSystem,
        name: str,
        *,
        timeout: float = 30.0,
        owns_system: bool = False,
    ) -> None:
        ref = system.lookup(f"/{name}")
        cell = system.cell(name)
        if ref is None or cell is None:
            raise ClusterTerminated()
        self._system = system
        self._name = name
        self._ref: ActorRef[ControllerMsg] = ref
        self._cell = cell
        self._timeout = timeout
        self._owns_system = owns_system
        self._terminated: asyncio.Future[BaseException | None] = (
            asyncio.get_running_loop().create_future()
        )
        system.spawn(
            termination_watcher(ref, self._on_terminated),
            f"{name}-watcher-{next(_watcher_ids)}",
        )

    @classmethod
    async def start(
        cls,
        amount: int,
        options: ClusterOptions | None = None,
        *,
        system: ActorSystem | None = None,
        config: LocalClusterConfig | None = None,
        launcher: LauncherFactory | None = None,
        channel: Channel | None = None,
    ) -> LocalCluster:
        """Start a controller and grow it to *amount* members.

        If any member fails to launch or synchronize, everything started so
        far is torn down and the error is raised.
        """
        config = config or LocalClusterConfig()
        options = options or config.defaults
        owns_system = system is None
        system = system or ActorSystem()

        startup_args: tuple[str, ...] = ()
        if launcher is None or channel is None:
            boot = await ensure_network_enabled(config.boot)
            startup_args = ("--loader", boot.loader, "--hosts", config.boot.host, "--cookie", get_cookie())
            launcher = launcher or _process_launcher(boot, config.cluster)
            channel = channel or BroadcastChannel(boot.connection, timeout=config.cluster.sync_timeout)

        prefix = derive_prefix(options)
        name = options.name or f"localcluster-{prefix}"
        system.spawn(
            cluster_controller(
                options,
                prefix=prefix,
                launcher_factory=launcher,
                channel=channel,
                startup_args=startup_args,
                config=config.cluster,
            ),
            name,
        )
        cluster = cls(system, name, timeout=config.cluster.call_timeout, owns_system=owns_system)

        try:
            await cluster.grow(amount)
        except Exception:
            logger.error("Could not start cluster %s, tearing it down", prefix)
            await cluster.stop()
            raise
        logger.info("Cluster %s started with %d member(s)", prefix, amount)
        return cluster

    @classmethod
    def lookup(cls, system: ActorSystem, name: str, *, timeout: float = 30.0) -> LocalCluster | None:
        """Handle to the controller registered as *name*, if it is running."""
        if system.lookup(f"/{name}") is None:
            return None
        return cls(system, name, timeout=timeout)

    @property
    def name(self) -> str:
        return self._name

    @property
    def terminated(self) -> bool:
        return self._terminated.done() or self._cell.is_stopped

    async def wait_terminated(self) -> BaseException | None:
        """Wait for the controller to stop; returns why it stopped."""
        return await asyncio.shield(self._terminated)

    def _on_terminated(self) -> None:
        if not self._terminated.done():
            self._terminated.set_result(self._cell.stop_reason)

    async def _call(self, factory: Callable[[ActorRef[CallResult]], ControllerMsg]) -> Any:
        if self.terminated:
            raise ClusterTerminated(self._cell.stop_reason)

        ask = asyncio.ensure_future(self._system.ask(self._ref, factory, timeout=self._timeout))
        await asyncio.wait({ask, self._terminated}, return_when=asyncio.FIRST_COMPLETED)
        if not ask.done():
            ask.cancel()
            raise ClusterTerminated(self._terminated.result())

        result: CallResult = ask.result()
        if result.error is not None:
            raise result.error
        return result.value

    async def members(self) -> list[Member]:
        return list(await self._call(GetMembers))

    async def nodes(self) -> list[str]:
        return [m.node for m in await self.members()]

    async def pids(self) -> list[int]:
        return [m.pid for m in await self.members()]

    async def grow(self, amount: int) -> list[Member]:
        """Add *amount* members; returns exactly the members added."""
        if amount < 0:
            raise ValueError(f"amount must be >= 0, got {amount}")
        return list(await self._call(lambda reply_to: AddMembers(amount, reply_to)))

    async def stop_member(self, selector: Selector) -> None:
        """Stop the member picked by *selector*. Missing members are ignored."""
        await self._call(lambda reply_to: StopMember(selector, reply_to))

    async def stop(self) -> None:
        """Destroy the cluster and every member it is linked to. Idempotent."""
        if not self.terminated:
            try:
                await self._call(Destroy)
            except ClusterTerminated:
                pass
            await asyncio.wait_for(self.wait_terminated(), timeout=self._timeout)
        if self._owns_system:
            await self._system.shutdown()

    async def __aenter__(self) -> LocalCluster:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()


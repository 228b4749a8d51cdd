"""Minimal ActorCell built on the Behavior primitive.

Owns the mailbox, runs the message loop, notifies watchers. A handler that
raises stops the actor; the exception becomes the stop reason carried by
``Terminated`` and ``ActorStopped``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, cast, overload, TYPE_CHECKING

from localcluster.core.behavior import Behavior, Signal
from localcluster.core.events import ActorStarted, ActorStopped, DeadLetter, UnhandledMessage
from localcluster.core.event_stream import EventStreamMsg, Publish
from localcluster.core.mailbox import Mailbox
from localcluster.core.messages import Terminated
from localcluster.core.ref import ActorId, ActorRef, LocalActorRef

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from localcluster.core.context import System


class CellContext[M]:
    """Concrete ActorContext implementation backed by an ActorCell."""

    def __init__(self, cell: ActorCell[M]) -> None:
        self._cell = cell

    @property
    def self(self) -> ActorRef[M]:
        return self._cell.ref

    @property
    def system(self) -> System:
        if self._cell.system is None:
            msg = "No system available in this context"
            raise RuntimeError(msg)
        return self._cell.system

    @property
    def log(self) -> logging.Logger:
        return self._cell.logger

    def watch(self, ref: ActorRef[Any]) -> None:
        target = self._cell.resolve(ref)
        if target is None:
            self._cell.ref.tell(Terminated(ref=ref))
            return
        target.watchers.add(self._cell)

    def on_stop(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._cell.stop_callbacks.append(callback)

    @overload
    def pipe_to_self(
        self,
        coro: Awaitable[M],
        *,
        on_failure: Callable[[Exception], M] | None = None,
    ) -> None: ...

    @overload
    def pipe_to_self[T](
        self,
        coro: Awaitable[T],
        mapper: Callable[[T], M],
        on_failure: Callable[[Exception], M] | None = None,
    ) -> None: ...

    def pipe_to_self[T](
        self,
        coro: Awaitable[T],
        mapper: Callable[[T], M] | None = None,
        on_failure: Callable[[Exception], M] | None = None,
    ) -> None:
        ref = self._cell.ref

        async def run() -> None:
            try:
                result = await coro
                if mapper is not None:
                    ref.tell(mapper(result))
                else:
                    ref.tell(cast(M, result))
            except Exception as exc:
                if on_failure is not None:
                    ref.tell(on_failure(exc))
                else:
                    self._cell.logger.warning(
                        "pipe_to_self failed (no on_failure handler): %s",
                        exc,
                    )

        self._cell.track(asyncio.get_running_loop().create_task(run()))


class ActorCell[M]:
    """Minimal runtime engine for an actor.

    Owns the mailbox, runs the message loop, notifies watchers.
    Does NOT know about lifecycle hooks; those are composed into the
    Behavior before the cell sees it.
    """

    def __init__(
        self,
        behavior: Behavior[M],
        id: ActorId,
        event_stream: ActorRef[EventStreamMsg] | None = None,
        system: System | None = None,
        resolver: Callable[[ActorId], ActorCell[Any] | None] | None = None,
    ) -> None:
        self._initial_behavior = behavior
        self._id = id
        self._event_stream = event_stream
        self._system = system
        self._resolver = resolver
        self._mailbox: Mailbox[Any] = Mailbox()
        self._logger = logging.getLogger(f"localcluster.actor.{id}")

        self._stopped = False
        self._stop_reason: BaseException | None = None
        self._watchers: set[ActorCell[Any]] = set()
        self._stop_callbacks: list[Callable[[], Awaitable[None]]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._current_handler: Callable[..., Awaitable[Behavior[M]]] | None = None
        self._loop_task: asyncio.Task[None] | None = None

        self._ctx: CellContext[M] = CellContext(self)
        self._ref: ActorRef[M] = LocalActorRef(id=id, _deliver=self._deliver)

    @property
    def id(self) -> ActorId:
        return self._id

    @property
    def ref(self) -> ActorRef[M]:
        return self._ref

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def stop_reason(self) -> BaseException | None:
        return self._stop_reason

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def watchers(self) -> set[ActorCell[Any]]:
        return self._watchers

    @property
    def stop_callbacks(self) -> list[Callable[[], Awaitable[None]]]:
        return self._stop_callbacks

    @property
    def system(self) -> System | None:
        return self._system

    @property
    def mailbox(self) -> Mailbox[Any]:
        return self._mailbox

    def resolve(self, ref: ActorRef[Any]) -> ActorCell[Any] | None:
        if self._resolver is None:
            return None
        return self._resolver(ref.id)

    def track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _publish(self, event: object) -> None:
        if self._event_stream is not None:
            self._event_stream.tell(Publish(event))

    def _deliver(self, msg: M) -> None:
        if self._stopped:
            match msg:
                case DeadLetter():
                    pass
                case _:
                    self._publish(DeadLetter(message=msg, intended_ref=self._ref))
            return
        self._mailbox.put(msg)

    async def start(self) -> None:
        try:
            await self._initialize(self._initial_behavior)
        except Exception as exc:
            self._logger.exception("Actor %s failed during setup", self._id)
            await self._do_stop(exc)
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())
        self._publish(ActorStarted(ref=self._ref))
        self._logger.debug("Started")

    async def _initialize(self, behavior: Behavior[M]) -> None:
        match (behavior.on_setup, behavior.on_receive, behavior.signal):
            case (factory, None, None) if factory is not None:
                result = await factory(self._ctx)
                await self._initialize(result)
            case (None, handler, None) if handler is not None:
                self._current_handler = handler
            case _:
                msg = f"Cannot initialize with behavior: {behavior}"
                raise TypeError(msg)

    async def _run_loop(self) -> None:
        while not self._stopped:
            try:
                msg = await self._mailbox.get()
                if self._stopped:
                    break

                if self._current_handler is None:
                    continue

                try:
                    next_behavior = await self._current_handler(self._ctx, msg)
                except Exception as exc:
                    self._logger.exception("Actor %s failed", self._id)
                    await self._do_stop(exc)
                    break

                await self._apply(next_behavior, msg)

            except asyncio.CancelledError:
                break

    async def _apply(self, behavior: Behavior[M], msg: M) -> None:
        match behavior.signal:
            case Signal.same:
                pass
            case Signal.stopped:
                await self._do_stop()
            case Signal.unhandled:
                self._publish(UnhandledMessage(message=msg, ref=self._ref))
            case None:
                if behavior.on_receive is not None:
                    self._current_handler = behavior.on_receive
                elif behavior.on_setup is not None:
                    await self._initialize(behavior)

    async def _do_stop(self, reason: BaseException | None = None) -> None:
        if self._stopped:
            return

        self._stopped = True
        self._stop_reason = reason
        self._logger.debug("Stopping")

        for callback in reversed(self._stop_callbacks):
            try:
                await callback()
            except Exception:
                self._logger.exception("Error in stop callback")

        for task in list(self._tasks):
            task.cancel()

        for watcher in self._watchers:
            watcher._deliver(Terminated(ref=self._ref, reason=reason))

        for pending in self._mailbox.drain():
            self._publish(DeadLetter(message=pending, intended_ref=self._ref))

        self._publish(ActorStopped(ref=self._ref, reason=reason))

    async def stop(self) -> None:
        if self._stopped:
            return

        await self._do_stop()

        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

"""Actor context protocol for the Behavior primitive.

Defines the capabilities available inside a behavior handler:
own ref, logging, death-watch, pipe-to-self.
Also defines ``System``, the protocol for the actor system visible from behaviors.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, overload, TYPE_CHECKING

if TYPE_CHECKING:
    from localcluster.core.behavior import Behavior
    from localcluster.core.event_stream import EventStreamMsg
    from localcluster.core.ref import ActorRef


class System(Protocol):
    """Protocol exposing the actor system's public API to behaviors."""

    @property
    def name(self) -> str: ...

    @property
    def event_stream(self) -> ActorRef[EventStreamMsg]: ...

    def spawn[M](self, behavior: Behavior[M], name: str) -> ActorRef[M]: ...

    async def ask[M, R](
        self,
        ref: ActorRef[M],
        msg_factory: Callable[[ActorRef[R]], M],
        *,
        timeout: float,
    ) -> R: ...

    def lookup(self, path: str) -> ActorRef[Any] | None: ...

    async def shutdown(self) -> None: ...


class ActorContext[M](Protocol):
    """Protocol for the context available to actor behavior handlers."""

    @property
    def self(self) -> ActorRef[M]: ...

    @property
    def system(self) -> System: ...

    @property
    def log(self) -> logging.Logger: ...

    def watch(self, ref: ActorRef[Any]) -> None: ...

    def on_stop(self, callback: Callable[[], Awaitable[None]]) -> None: ...

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
    ) -> None: ...

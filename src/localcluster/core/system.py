"""Actor system entry point for spawning and managing top-level actors.

Provides ``ActorSystem``, the runtime container that owns root actors,
handles request-reply (``ask``), path-based lookup and graceful shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, cast, TYPE_CHECKING

from localcluster.core.actor import ActorCell
from localcluster.core.behavior import Behavior
from localcluster.core.event_stream import EventStreamMsg, event_stream_actor
from localcluster.core.ref import ActorId, ActorRef, LocalActorRef

if TYPE_CHECKING:
    from localcluster.core.context import System


class ActorSystem:
    """Main entry point for creating and managing actors.

    Use as an async context manager for automatic shutdown.
    """

    def __init__(self, name: str = "localcluster") -> None:
        self._name = name
        self._root_cells: dict[str, ActorCell[Any]] = {}
        self._event_stream_ref: ActorRef[EventStreamMsg] | None = None
        self._logger = logging.getLogger(f"localcluster.system.{name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def event_stream(self) -> ActorRef[EventStreamMsg]:
        return self._ensure_event_stream()

    async def __aenter__(self) -> ActorSystem:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    def _resolve(self, id: ActorId) -> ActorCell[Any] | None:
        cell = self._root_cells.get(id)
        if cell is None or cell.is_stopped:
            return None
        return cell

    def _ensure_event_stream(self) -> ActorRef[EventStreamMsg]:
        if self._event_stream_ref is not None:
            return self._event_stream_ref

        cell: ActorCell[EventStreamMsg] = ActorCell(
            behavior=event_stream_actor(),
            id="_event_stream",
            system=cast("System", self),
        )
        self._root_cells["_event_stream"] = cell
        asyncio.get_running_loop().create_task(cell.start())
        self._event_stream_ref = cell.ref
        return cell.ref

    def spawn[M](self, behavior: Behavior[M], name: str) -> ActorRef[M]:
        """Spawn a root-level actor in this system."""
        existing = self._root_cells.get(name)
        if existing is not None:
            if not existing.is_stopped:
                raise ValueError(f"Root actor '{name}' already exists")
            del self._root_cells[name]

        es_ref = self._ensure_event_stream()

        cell: ActorCell[M] = ActorCell(
            behavior=behavior,
            id=name,
            event_stream=es_ref,
            system=cast("System", self),
            resolver=self._resolve,
        )
        self._root_cells[name] = cell
        asyncio.get_running_loop().create_task(cell.start())
        self._logger.debug("Spawning root actor: %s", name)
        return cell.ref

    def cell(self, name: str) -> ActorCell[Any] | None:
        """Return the cell behind a root actor, stopped or not."""
        return self._root_cells.get(name)

    async def stop(self, ref: ActorRef[Any]) -> None:
        """Stop a root actor and forget it."""
        cell = self._root_cells.get(ref.id)
        if cell is not None:
            await cell.stop()

    async def ask[M, R](
        self,
        ref: ActorRef[M],
        msg_factory: Callable[[ActorRef[R]], M],
        *,
        timeout: float,
    ) -> R:
        """Send a message and wait for a reply (request-reply pattern)."""
        future: asyncio.Future[R] = asyncio.get_running_loop().create_future()

        def on_reply(msg: Any) -> None:
            if not future.done():
                future.set_result(msg)

        temp_ref: ActorRef[R] = LocalActorRef(id=f"_ask/{id(future)}", _deliver=on_reply)
        ref.tell(msg_factory(temp_ref))
        return await asyncio.wait_for(future, timeout=timeout)

    def lookup(self, path: str) -> ActorRef[Any] | None:
        """Look up a live root actor by path (``/name``)."""
        cell = self._resolve(path.strip("/"))
        if cell is None:
            return None
        return cell.ref

    async def shutdown(self) -> None:
        """Shut down the actor system, stopping all root actors."""
        self._logger.debug("Shutting down (%d root actors)", len(self._root_cells))
        for name, cell in list(self._root_cells.items()):
            if name != "_event_stream":
                await cell.stop()
        if "_event_stream" in self._root_cells:
            await self._root_cells["_event_stream"].stop()
        self._root_cells.clear()
        self._event_stream_ref = None

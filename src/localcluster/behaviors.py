"""High-level behavior factories built on the Behavior primitive.

Every factory here composes ``Behavior.receive``, ``Behavior.setup``,
and ``Behavior.same``/``Behavior.stopped``. Lifecycle hooks are emergent,
not baked into the cell.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TYPE_CHECKING

from localcluster.core.behavior import Behavior

if TYPE_CHECKING:
    from localcluster.core.context import ActorContext


class Behaviors:
    """Factory for composing behaviors from the Behavior primitive."""

    @staticmethod
    def receive[M](
        handler: Callable[[ActorContext[M], M], Awaitable[Behavior[M]]],
    ) -> Behavior[M]:
        return Behavior.receive(handler)

    @staticmethod
    def setup[M](
        factory: Callable[[ActorContext[M]], Awaitable[Behavior[M]]],
    ) -> Behavior[M]:
        return Behavior.setup(factory)

    @staticmethod
    def same() -> Behavior[Any]:
        return Behavior.same()

    @staticmethod
    def stopped() -> Behavior[Any]:
        return Behavior.stopped()

    @staticmethod
    def unhandled() -> Behavior[Any]:
        return Behavior.unhandled()

    @staticmethod
    def with_lifecycle[M](
        behavior: Behavior[M],
        *,
        pre_start: Callable[[ActorContext[M]], Awaitable[None]] | None = None,
        post_stop: Callable[[ActorContext[M]], Awaitable[None]] | None = None,
    ) -> Behavior[M]:
        """Wrap *behavior* with start and stop hooks.

        ``post_stop`` runs however the actor ends: a ``stopped`` behavior,
        a failing handler, or system shutdown.
        """

        async def setup(ctx: ActorContext[M]) -> Behavior[M]:
            if pre_start is not None:
                await pre_start(ctx)

            if post_stop is not None:

                async def on_stop() -> None:
                    await post_stop(ctx)

                ctx.on_stop(on_stop)

            return behavior

        return Behavior.setup(setup)

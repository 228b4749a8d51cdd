"""Actor lifecycle signal messages.

Provides the ``Terminated`` message delivered to watchers when a
monitored actor stops.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from localcluster.core.ref import ActorRef


@dataclass(frozen=True)
class Terminated:
    """Signal sent when a watched actor is stopped.

    Delivered to actors that called ``ctx.watch()`` on the terminated
    actor's reference. ``reason`` is the exception that stopped the actor,
    or ``None`` for a normal stop.
    """

    ref: ActorRef[Any]
    reason: BaseException | None = None

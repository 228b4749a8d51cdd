"""Broadcast/collect channel: one command, many members, every reply.

``invoke`` sends the same typed command to each node concurrently and
gathers the outcome per node. A node fails when it is not connected, when
its connection drops, when it answers ``Failed``, or when it does not
answer within the timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol

from localcluster.network import MemberConnection
from localcluster.protocol import Command, Failed, Ok, command_name

__all__ = ["BroadcastChannel", "BroadcastResult", "Channel"]

logger = logging.getLogger("localcluster.channel")


@dataclass(frozen=True)
class BroadcastResult:
    """Per-node outcome of one broadcast.

    ``replies`` holds the value returned by every node that succeeded,
    ``failures`` the reason for every node that did not.
    """

    replies: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    failures: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def ok(self) -> bool:
        return not self.failures


class Channel(Protocol):
    async def invoke(self, nodes: Sequence[str], command: Command) -> BroadcastResult: ...


class BroadcastChannel:
    """Broadcast over the command connections known to the boot server."""

    def __init__(
        self,
        connections: Callable[[str], MemberConnection | None],
        *,
        timeout: float = 30.0,
    ) -> None:
        self._connections = connections
        self._timeout = timeout

    async def invoke(self, nodes: Sequence[str], command: Command) -> BroadcastResult:
        outcomes = await asyncio.gather(*(self._call(node, command) for node in nodes))

        replies: dict[str, Any] = {}
        failures: dict[str, str] = {}
        for node, (succeeded, value) in zip(nodes, outcomes):
            if succeeded:
                replies[node] = value
            else:
                failures[node] = value

        if failures:
            logger.warning("%s failed on %s", command_name(command), ", ".join(failures))
        else:
            logger.debug("%s ok on %d member(s)", command_name(command), len(nodes))
        return BroadcastResult(MappingProxyType(replies), MappingProxyType(failures))

    async def _call(self, node: str, command: Command) -> tuple[bool, Any]:
        conn = self._connections(node)
        if conn is None:
            return (False, "not connected")
        try:
            reply = await conn.request(command, timeout=self._timeout)
        except ConnectionError as exc:
            return (False, str(exc))
        except TimeoutError:
            return (False, f"no reply within {self._timeout}s")
        except (TypeError, ValueError) as exc:
            return (False, f"cannot encode {command_name(command)}: {exc}")

        match reply:
            case Ok(value=value):
                return (True, value)
            case Failed(error=error):
                return (False, error)
        return (False, f"unexpected reply {reply!r}")

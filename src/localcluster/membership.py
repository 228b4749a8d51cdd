"""Members and the selectors used to pick one.

A ``Member`` pairs the OS process id of a member interpreter (its process
handle, used for linking and teardown) with its instance identifier (the
node name used to route commands).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class Member:
    pid: int
    node: str


@dataclass(frozen=True)
class ByMember:
    member: Member


@dataclass(frozen=True)
class ByPid:
    pid: int


@dataclass(frozen=True)
class ByNode:
    node: str


type Selector = ByMember | ByPid | ByNode


def matches(selector: Selector, member: Member) -> bool:
    match selector:
        case ByMember(member=wanted):
            return member == wanted
        case ByPid(pid=pid):
            return member.pid == pid
        case ByNode(node=node):
            return member.node == node
    raise TypeError(f"not a member selector: {selector!r}")


def find(members: Iterable[Member], selector: Selector) -> Member | None:
    """First member matching *selector*, or ``None``."""
    for member in members:
        if matches(selector, member):
            return member
    return None


def without(members: Iterable[Member], removed: Iterable[Member]) -> tuple[Member, ...]:
    """Remove one occurrence of each of *removed* from *members*, keeping order."""
    remaining = list(members)
    for member in removed:
        if member in remaining:
            remaining.remove(member)
    return tuple(remaining)

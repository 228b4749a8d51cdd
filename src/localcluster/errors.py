"""Error taxonomy for cluster control.

Every failure is raised to the caller of the operation that triggered it.
A missing member on ``stop_member`` is not an error.
"""

from __future__ import annotations

from collections.abc import Mapping


class LocalClusterError(Exception):
    """Base class for every error raised by localcluster."""


class LaunchError(LocalClusterError):
    """A member instance could not be spawned or never registered."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"failed to launch member {name!r}: {reason}")
        self.name = name
        self.reason = reason


class SyncError(LocalClusterError):
    """A broadcast step reported failures on one or more members.

    The members involved stay alive and linked to the controller; call
    ``stop()`` on the cluster to get rid of them.
    """

    def __init__(self, command: str, failures: Mapping[str, str]) -> None:
        detail = ", ".join(f"{node}: {reason}" for node, reason in failures.items())
        super().__init__(f"{command} failed on {len(failures)} member(s): {detail}")
        self.command = command
        self.failures = dict(failures)


class LinkError(LocalClusterError):
    """A member expected to be linked had no active link.

    Indicates corrupted controller state; the controller stops after
    reporting it.
    """


class ClusterTerminated(LocalClusterError):
    """The cluster controller is no longer running."""

    def __init__(self, reason: BaseException | None = None) -> None:
        message = "cluster controller terminated"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason


class MemberExited(LocalClusterError):
    """A linked member terminated without being stopped by the controller."""

    def __init__(self, node: str, pid: int, returncode: int | None) -> None:
        super().__init__(f"member {node} (pid {pid}) exited with status {returncode}")
        self.node = node
        self.pid = pid
        self.returncode = returncode


class HandshakeError(LocalClusterError):
    """The boot server refused a member registration."""


class ServiceError(LocalClusterError):
    """A service could not be resolved or started."""

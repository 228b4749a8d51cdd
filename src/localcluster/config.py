"""TOML-based configuration for local clusters.

Provides ``load_config`` / ``discover_config`` for loading
``localcluster.toml`` and a hierarchy of frozen dataclasses for controller
timeouts, the boot server and default cluster options.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

__all__ = [
    "BootConfig",
    "ClusterOptions",
    "ControllerConfig",
    "LocalClusterConfig",
    "discover_config",
    "load_config",
]

CONFIG_FILENAME = "localcluster.toml"


@dataclass(frozen=True)
class ClusterOptions:
    """Options captured when a cluster is created.

    Parameters
    ----------
    applications : tuple[str, ...]
        Services started on every member, in order, after the bootstrap
        services.
    environment : Mapping[str, Mapping[str, Any]]
        Per-service environment overrides. Values win over the controller's
        own environment for the same key.
    files : tuple[str, ...]
        Python source files executed on every member once started.
    name : str | None
        Name under which the controller actor is registered.
    prefix : str | None
        Prefix of every member name. Falls back to ``name``, then to a random
        8-letter token.

    Examples
    --------
    >>> ClusterOptions(prefix="x", applications=("myapp",))
    ClusterOptions(applications=('myapp',), ...)
    """

    applications: tuple[str, ...] = ()
    environment: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    files: tuple[str, ...] = ()
    name: str | None = None
    prefix: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "applications", tuple(self.applications))
        object.__setattr__(self, "files", tuple(str(f) for f in self.files))
        object.__setattr__(
            self,
            "environment",
            MappingProxyType(
                {name: MappingProxyType(dict(env)) for name, env in self.environment.items()}
            ),
        )


@dataclass(frozen=True)
class ControllerConfig:
    """Controller timeouts and member host.

    Parameters
    ----------
    host : str
        Host every member is started on.
    call_timeout : float
        Upper bound for every public cluster call, in seconds.
    launch_timeout : float
        Time a new member has to register with the boot server.
    stop_timeout : float
        Grace period for a member to exit after ``Shutdown`` before it is killed.
    sync_timeout : float
        Time each broadcast step may take on every member.

    Examples
    --------
    >>> ControllerConfig(call_timeout=60.0)
    ControllerConfig(host='127.0.0.1', call_timeout=60.0, ...)
    """

    host: str = "127.0.0.1"
    call_timeout: float = 30.0
    launch_timeout: float = 15.0
    stop_timeout: float = 5.0
    sync_timeout: float = 30.0


@dataclass(frozen=True)
class BootConfig:
    """Boot server settings.

    Parameters
    ----------
    host : str
        Bind address; members must connect from one of ``allowed_hosts``.
    port : int
        Bind port (0 for OS-assigned).
    allowed_hosts : tuple[str, ...]
        Peer addresses allowed to register.
    """

    host: str = "127.0.0.1"
    port: int = 0
    allowed_hosts: tuple[str, ...] = ("127.0.0.1",)


@dataclass(frozen=True)
class LocalClusterConfig:
    """Top-level configuration container.

    Examples
    --------
    >>> config = LocalClusterConfig()
    >>> config.cluster.call_timeout
    30.0

    >>> config = load_config(Path("localcluster.toml"))
    """

    cluster: ControllerConfig = field(default_factory=ControllerConfig)
    boot: BootConfig = field(default_factory=BootConfig)
    defaults: ClusterOptions = field(default_factory=ClusterOptions)


def discover_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for ``localcluster.toml``."""
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(path: Path | None = None) -> LocalClusterConfig:
    """Load a ``LocalClusterConfig`` from a TOML file.

    If *path* is ``None``, auto-discovers ``localcluster.toml`` by walking up
    from the current working directory. Returns the default config if no
    file is found.

    Raises
    ------
    FileNotFoundError
        If an explicit *path* is given but does not exist.
    """
    if path is None:
        discovered = discover_config()
        if discovered is None:
            return LocalClusterConfig()
        path = discovered

    if not path.exists():
        msg = f"Config file not found: {path}"
        raise FileNotFoundError(msg)

    with path.open("rb") as f:
        raw = tomllib.load(f)

    cluster = ControllerConfig(**raw.get("cluster", {}))

    boot_raw: dict[str, Any] = dict(raw.get("boot", {}))
    if "allowed_hosts" in boot_raw:
        boot_raw["allowed_hosts"] = tuple(boot_raw["allowed_hosts"])
    boot = BootConfig(**boot_raw)

    defaults_raw: dict[str, Any] = raw.get("defaults", {})
    defaults = ClusterOptions(
        applications=tuple(defaults_raw.get("applications", ())),
        environment=defaults_raw.get("environment", {}),
        files=tuple(defaults_raw.get("files", ())),
        name=defaults_raw.get("name"),
        prefix=defaults_raw.get("prefix"),
    )

    return LocalClusterConfig(cluster=cluster, boot=boot, defaults=defaults)

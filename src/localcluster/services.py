"""Service registry, service environment and runtime mode.

A *service* is a named unit that can be started once per process, with a
key/value environment and optional dependencies started before it. Services
are either registered explicitly or resolved by importing a module of the
same name, which may define ``SERVICE_ENV``, ``DEPENDENCIES``, ``start()``
and ``stop()``.

The controller process reads the environment of its loaded services to seed
new members; members apply it and start the requested services.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import os
import threading
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from localcluster.errors import ServiceError

__all__ = [
    "BOOTSTRAP_SERVICES",
    "LOG_FORMAT",
    "MODE_ENV_VAR",
    "Service",
    "ServiceRegistry",
    "default_registry",
    "ensure_all_started",
    "get_all_env",
    "get_env",
    "loaded",
    "mode",
    "put_env",
    "register",
    "set_env",
    "set_mode",
]

logger = logging.getLogger("localcluster.services")

MODE_ENV_VAR = "LOCALCLUSTER_ENV"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# started on every member before any application
BOOTSTRAP_SERVICES: tuple[str, ...] = ("logging", "localcluster")

type StartFn = Callable[[], Awaitable[Any] | Any]


@dataclass
class Service:
    name: str
    env: dict[str, Any] = field(default_factory=dict)
    start: StartFn | None = None
    stop: StartFn | None = None
    dependencies: tuple[str, ...] = ()


def _start_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)


class ServiceRegistry:
    """Per-process table of known services, their environment and run state."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._services: dict[str, Service] = {}
        self._env: dict[str, dict[str, Any]] = {}
        self._started: list[str] = []
        self.register("logging", start=_start_logging)
        self.register("localcluster", dependencies=("logging",))

    def register(
        self,
        name: str,
        *,
        env: Mapping[str, Any] | None = None,
        start: StartFn | None = None,
        stop: StartFn | None = None,
        dependencies: Iterable[str] = (),
    ) -> Service:
        """Define a service. Existing environment values take precedence over *env*."""
        service = Service(
            name=name,
            env=dict(env or {}),
            start=start,
            stop=stop,
            dependencies=tuple(dependencies),
        )
        with self._lock:
            self._services[name] = service
            current = self._env.setdefault(name, {})
            for key, value in service.env.items():
                current.setdefault(key, value)
        return service

    def load(self, name: str) -> Service:
        """Return the definition of *name*, importing its module if needed."""
        with self._lock:
            service = self._services.get(name)
        if service is not None:
            return service

        try:
            module = importlib.import_module(name)
        except ImportError as exc:
            raise ServiceError(f"unknown service {name!r}: {exc}") from exc

        logger.debug("Loaded service %s from module %s", name, module.__name__)
        return self.register(
            name,
            env=getattr(module, "SERVICE_ENV", None),
            start=getattr(module, "start", None),
            stop=getattr(module, "stop", None),
            dependencies=getattr(module, "DEPENDENCIES", ()),
        )

    def loaded(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._services)

    def started(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._started)

    def get_env(self, name: str, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._env.get(name, {}).get(key, default)

    def get_all_env(self, name: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._env.get(name, {}))

    def put_env(self, name: str, key: str, value: Any) -> None:
        with self._lock:
            self._env.setdefault(name, {})[key] = value

    def set_env(self, config: Mapping[str, Mapping[str, Any]]) -> None:
        """Merge a ``{service: {key: value}}`` mapping into the environment.

        Services need not be loaded yet; their environment is kept for when
        they are.
        """
        with self._lock:
            for name, values in config.items():
                self._env.setdefault(name, {}).update(values)

    async def ensure_all_started(self, names: Iterable[str]) -> tuple[str, ...]:
        """Start each service in *names*, dependencies first.

        Services already running are skipped. Returns the services started
        by this call, in start order.
        """
        newly: list[str] = []
        for name in names:
            await self._start(name, newly, ())
        return tuple(newly)

    async def _start(self, name: str, newly: list[str], path: tuple[str, ...]) -> None:
        if name in path:
            cycle = " -> ".join((*path, name))
            raise ServiceError(f"dependency cycle: {cycle}")
        if name in self._started:
            return

        service = self.load(name)
        for dependency in service.dependencies:
            await self._start(dependency, newly, (*path, name))

        if service.start is not None:
            try:
                result = service.start()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                raise ServiceError(f"service {name!r} failed to start: {exc}") from exc

        with self._lock:
            self._started.append(name)
        newly.append(name)
        logger.info("Started service %s", name)

    async def stop_all(self) -> None:
        """Stop every started service in reverse start order."""
        while self._started:
            with self._lock:
                name = self._started.pop()
            service = self._services.get(name)
            if service is None or service.stop is None:
                continue
            result = service.stop()
            if inspect.isawaitable(result):
                await result
            logger.info("Stopped service %s", name)


default_registry = ServiceRegistry()

register = default_registry.register
loaded = default_registry.loaded
get_env = default_registry.get_env
get_all_env = default_registry.get_all_env
put_env = default_registry.put_env
set_env = default_registry.set_env
ensure_all_started = default_registry.ensure_all_started

_mode: str | None = None


def mode() -> str:
    """Current runtime mode (``LOCALCLUSTER_ENV``, default ``"test"``)."""
    if _mode is not None:
        return _mode
    return os.environ.get(MODE_ENV_VAR, "test")


def set_mode(value: str) -> None:
    global _mode
    _mode = value
    os.environ[MODE_ENV_VAR] = value

"""Network bootstrap: the boot server members register with.

``ensure_network_enabled()`` makes the current process reachable by its
members: it starts a TCP boot server on loopback, guarded so that any number
of callers share one server per event loop. Members connect, present the
shared cookie in a ``Hello`` frame and, once accepted, keep that connection
open as their command channel. A member treats the loss of this connection
as the loss of its controller and exits.
"""

from __future__ import annotations

import asyncio
import hmac
import itertools
import logging
import os
import secrets
import threading
import weakref
from collections.abc import Callable
from dataclasses import replace

from localcluster.config import BootConfig
from localcluster.errors import HandshakeError
from localcluster.protocol import (
    Command,
    Failed,
    Hello,
    Ok,
    Rejected,
    Reply,
    Welcome,
    read_frame,
    write_frame,
)

__all__ = [
    "COOKIE_ENV_VAR",
    "BootServer",
    "MemberConnection",
    "disable_network",
    "ensure_network_enabled",
    "get_cookie",
]

logger = logging.getLogger("localcluster.network")

COOKIE_ENV_VAR = "LOCALCLUSTER_COOKIE"
HANDSHAKE_TIMEOUT = 5.0

_guard = threading.Lock()
_cookie: str | None = None
_server: BootServer | None = None
_start_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


def get_cookie() -> str:
    """Shared secret members must present; stable for the process lifetime."""
    global _cookie
    if _cookie is None:
        with _guard:
            if _cookie is None:
                _cookie = os.environ.get(COOKIE_ENV_VAR) or secrets.token_urlsafe(24)
    return _cookie


class MemberConnection:
    """Command channel to one registered member.

    Commands are request/reply: each gets a fresh ``request_id`` and the
    matching ``Ok``/``Failed`` resolves it. When the stream closes, every
    pending request fails with ``ConnectionError``.
    """

    def __init__(
        self,
        node: str,
        pid: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_close: Callable[[MemberConnection], None] | None = None,
    ) -> None:
        self.node = node
        self.pid = pid
        self._on_close = on_close
        self._reader = reader
        self._writer = writer
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Reply]] = {}
        self._write_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._read_task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def request(self, command: Command, *, timeout: float) -> Reply:
        """Send *command* and wait for the member's reply."""
        if self.closed:
            raise ConnectionError(f"connection to {self.node} is closed")

        request_id = next(self._ids)
        future: asyncio.Future[Reply] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            async with self._write_lock:
                await write_frame(self._writer, replace(command, request_id=request_id))
            logger.debug("-> %s %s#%d", self.node, type(command).__name__, request_id)
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            while True:
                reply = await read_frame(self._reader)
                match reply:
                    case Ok(request_id=rid) | Failed(request_id=rid):
                        future = self._pending.get(rid)
                        if future is not None and not future.done():
                            future.set_result(reply)
                    case _:
                        logger.warning("Unexpected frame from %s: %r", self.node, reply)
        except (asyncio.IncompleteReadError, ConnectionError, OSError, ValueError):
            pass
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError(f"connection to {self.node} lost"))
        self._writer.close()
        logger.debug("Connection to %s closed", self.node)
        if self._on_close is not None:
            self._on_close(self)

    async def close(self) -> None:
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._mark_closed()


class BootServer:
    """TCP server accepting member registrations.

    Parameters
    ----------
    config : BootConfig
        Bind address and host allowlist.
    cookie : str
        Shared secret every ``Hello`` must carry.
    """

    def __init__(self, config: BootConfig, cookie: str) -> None:
        self._config = config
        self._cookie = cookie
        self._server: asyncio.Server | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connections: dict[str, MemberConnection] = {}
        self._waiters: dict[str, asyncio.Future[MemberConnection]] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None or not self._server.sockets:
            return (self._config.host, self._config.port)
        host, port = self._server.sockets[0].getsockname()[:2]
        return (host, port)

    @property
    def loader(self) -> str:
        host, port = self.address
        return f"{host}:{port}"

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._server = await asyncio.start_server(
            self._handle_inbound, self._config.host, self._config.port,
        )

    @property
    def registered(self) -> tuple[str, ...]:
        """Nodes with an open connection."""
        return tuple(self._connections)

    def connection(self, node: str) -> MemberConnection | None:
        conn = self._connections.get(node)
        if conn is None or conn.closed:
            return None
        return conn

    def expect(self, node: str) -> asyncio.Future[MemberConnection]:
        """Future resolved when *node* registers."""
        future = self._waiters.get(node)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._waiters[node] = future
        return future

    def _discard(self, conn: MemberConnection) -> None:
        if self._connections.get(conn.node) is conn:
            del self._connections[conn.node]

    def forget(self, node: str) -> None:
        waiter = self._waiters.pop(node, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()

    def _validate(self, hello: Hello, peer_host: str) -> None:
        if not hmac.compare_digest(hello.cookie.encode(), self._cookie.encode()):
            raise HandshakeError(f"{hello.name}: bad cookie")
        if peer_host not in self._config.allowed_hosts:
            raise HandshakeError(f"{hello.name}: host {peer_host} not allowed")
        if self.connection(hello.name) is not None:
            raise HandshakeError(f"{hello.name}: name already registered")

    async def _handle_inbound(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_host = peer[0] if peer else ""
        try:
            hello = await asyncio.wait_for(read_frame(reader), timeout=HANDSHAKE_TIMEOUT)
        except (asyncio.IncompleteReadError, ConnectionError, OSError, ValueError, TimeoutError):
            writer.close()
            return

        if not isinstance(hello, Hello):
            logger.warning("Expected Hello from %s, got %r", peer_host, hello)
            writer.close()
            return

        try:
            self._validate(hello, peer_host)
        except HandshakeError as exc:
            logger.warning("Rejected member registration: %s", exc)
            try:
                await write_frame(writer, Rejected(reason=str(exc)))
            except (ConnectionError, OSError):
                pass
            writer.close()
            return

        conn = MemberConnection(hello.name, hello.pid, reader, writer, on_close=self._discard)
        self._connections[hello.name] = conn
        try:
            await write_frame(writer, Welcome(node=hello.name))
        except (ConnectionError, OSError):
            del self._connections[hello.name]
            writer.close()
            return
        conn.start()
        logger.debug("Member %s registered (pid %d)", hello.name, hello.pid)

        waiter = self._waiters.pop(hello.name, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(conn)

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
        for conn in list(self._connections.values()):
            await conn.close()
        self._connections.clear()
        if self._server is not None:
            # waits for every accepted connection to go away
            await self._server.wait_closed()
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()


def _usable(server: BootServer | None, loop: asyncio.AbstractEventLoop) -> bool:
    return server is not None and server.is_serving and server.loop is loop


async def ensure_network_enabled(config: BootConfig | None = None) -> BootServer:
    """Start the boot server unless it is already running on this loop.

    Safe to call any number of times; every caller gets the same server.
    """
    global _server
    loop = asyncio.get_running_loop()
    if _usable(_server, loop):
        return _server  # type: ignore[return-value]

    with _guard:
        start_lock = _start_locks.setdefault(loop, asyncio.Lock())

    async with start_lock:
        if _usable(_server, loop):
            return _server  # type: ignore[return-value]
        server = BootServer(config or BootConfig(), cookie=get_cookie())
        await server.start()
        _server = server
        logger.info("Network enabled, boot server on %s", server.loader)
        return server


async def disable_network() -> None:
    """Close the boot server; the next ``ensure_network_enabled`` starts a new one."""
    global _server
    server, _server = _server, None
    if server is not None and server.loop is asyncio.get_running_loop():
        await server.close()
        logger.info("Network disabled")

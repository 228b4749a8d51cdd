"""Wire messages exchanged between the controller host and its members.

Frame format: ``[length:4][payload]`` where ``payload`` is a message encoded
by the ``localcluster`` protocol codec.

A member opens one TCP connection to the boot server and sends ``Hello``.
The server answers ``Welcome`` or ``Rejected``. After that the controller
side sends commands, each tagged with a ``request_id``, and the member
answers every command with ``Ok`` or ``Failed`` carrying the same id.

Commands form a closed set: there is no generic remote call.
"""

from __future__ import annotations

import asyncio
import struct
from typing import Any

from localcluster.codec import ProtocolCodec

codec = ProtocolCodec("localcluster")

MAX_FRAME_SIZE = 16 * 1024 * 1024


@codec.serializable(0x01)
class Hello:
    name: str
    pid: int
    cookie: str


@codec.serializable(0x02)
class Welcome:
    node: str


@codec.serializable(0x03)
class Rejected:
    reason: str


@codec.serializable(0x10)
class SetCodePaths:
    paths: tuple[str, ...]
    request_id: int = 0


@codec.serializable(0x11)
class SetEnv:
    env: dict[str, dict[str, Any]]
    request_id: int = 0


@codec.serializable(0x12)
class StartServices:
    names: tuple[str, ...]
    request_id: int = 0


@codec.serializable(0x13)
class SetLogLevel:
    level: int
    request_id: int = 0


@codec.serializable(0x14)
class SetMode:
    mode: str
    request_id: int = 0


@codec.serializable(0x15)
class LoadFile:
    path: str
    request_id: int = 0


@codec.serializable(0x16)
class GetEnv:
    service: str
    request_id: int = 0


@codec.serializable(0x17)
class Ping:
    request_id: int = 0


@codec.serializable(0x18)
class Shutdown:
    request_id: int = 0


@codec.serializable(0x20)
class Ok:
    request_id: int
    value: Any = None


@codec.serializable(0x21)
class Failed:
    request_id: int
    error: str


type Command = (
    SetCodePaths | SetEnv | StartServices | SetLogLevel | SetMode | LoadFile | GetEnv | Ping | Shutdown
)
type Reply = Ok | Failed

COMMANDS: tuple[type, ...] = (
    SetCodePaths, SetEnv, StartServices, SetLogLevel, SetMode, LoadFile, GetEnv, Ping, Shutdown,
)


def command_name(command: Command) -> str:
    return type(command).__name__


async def read_frame(reader: asyncio.StreamReader) -> Any:
    """Read and decode one frame.

    Raises ``asyncio.IncompleteReadError`` when the peer closes the stream.
    """
    length_bytes = await reader.readexactly(4)
    length = struct.unpack("!I", length_bytes)[0]
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"frame of {length} bytes exceeds limit of {MAX_FRAME_SIZE}")
    return codec.decode(await reader.readexactly(length))


def pack_frame(msg: Any) -> bytes:
    payload = codec.encode(msg)
    return struct.pack("!I", len(payload)) + payload


async def write_frame(writer: asyncio.StreamWriter, msg: Any) -> None:
    writer.write(pack_frame(msg))
    await writer.drain()

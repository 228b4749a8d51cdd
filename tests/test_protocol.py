from __future__ import annotations

import asyncio
import struct

import pytest

from localcluster.protocol import (
    COMMANDS,
    MAX_FRAME_SIZE,
    Failed,
    GetEnv,
    Hello,
    Ok,
    SetCodePaths,
    SetEnv,
    StartServices,
    codec,
    command_name,
    pack_frame,
    read_frame,
)


def reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def test_frames_are_length_prefixed() -> None:
    frame = pack_frame(Hello(name="x1", pid=10, cookie="c"))
    (length,) = struct.unpack("!I", frame[:4])
    assert length == len(frame) - 4
    assert await read_frame(reader_with(frame)) == Hello(name="x1", pid=10, cookie="c")


async def test_consecutive_frames() -> None:
    reader = reader_with(pack_frame(Ok(request_id=1, value=[1, 2])) + pack_frame(Failed(2, "nope")))
    assert await read_frame(reader) == Ok(request_id=1, value=[1, 2])
    assert await read_frame(reader) == Failed(request_id=2, error="nope")


async def test_truncated_frame_raises_incomplete_read() -> None:
    frame = pack_frame(Ok(request_id=1))
    with pytest.raises(asyncio.IncompleteReadError):
        await read_frame(reader_with(frame[:-1]))


async def test_oversized_frame_rejected() -> None:
    with pytest.raises(ValueError, match="exceeds"):
        await read_frame(reader_with(struct.pack("!I", MAX_FRAME_SIZE + 1)))


def test_commands_carry_request_id() -> None:
    for command_type in COMMANDS:
        assert "request_id" in command_type.__dataclass_fields__


def test_code_paths_survive_encoding() -> None:
    paths = tuple(f"/lib/{i}" for i in range(20))
    decoded = codec.decode(codec.encode(SetCodePaths(paths=paths, request_id=3)))
    assert decoded == SetCodePaths(paths=paths, request_id=3)


def test_env_and_service_names_survive_encoding() -> None:
    env = SetEnv(env={"svc": {"a": 1, "b": [1, "two"]}})
    assert codec.decode(codec.encode(env)) == env
    start = StartServices(names=("logging", "localcluster"))
    assert codec.decode(codec.encode(start)).names == ("logging", "localcluster")


def test_command_name() -> None:
    assert command_name(GetEnv(service="svc")) == "GetEnv"

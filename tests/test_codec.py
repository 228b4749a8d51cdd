"""Tests for the scoped msgpack protocol codec."""

import dataclasses

import pytest

from localcluster.codec import ProtocolCodec

wire = ProtocolCodec("test-wire")


@wire.serializable(0x01)
class Simple:
    name: str
    count: int


@wire.serializable(0x02)
class WithTuples:
    paths: tuple[str, ...]
    pair: tuple[str, int]


@wire.serializable(0x03)
class WithNested:
    env: dict[str, dict[str, int]]
    extra: str | None = None


def test_serializable_makes_frozen_dataclass() -> None:
    msg = Simple("a", 1)
    assert dataclasses.is_dataclass(msg)
    with pytest.raises(dataclasses.FrozenInstanceError):
        msg.count = 2  # type: ignore[misc]


def test_message_id_is_first_byte() -> None:
    data = wire.encode(Simple("a", 1))
    assert data[0] == 0x01
    assert wire.get_message_id(Simple) == 0x01


def test_decode_restores_message() -> None:
    assert wire.decode(wire.encode(Simple("node", 7))) == Simple("node", 7)


def test_variadic_tuple_keeps_every_element() -> None:
    msg = WithTuples(paths=("a", "b", "c", "d"), pair=("host", 80))
    decoded = wire.decode(wire.encode(msg))
    assert decoded.paths == ("a", "b", "c", "d")
    assert decoded.pair == ("host", 80)
    assert isinstance(decoded.paths, tuple)


def test_nested_maps_and_defaults() -> None:
    decoded = wire.decode(wire.encode(WithNested(env={"svc": {"k": 1}})))
    assert decoded.env == {"svc": {"k": 1}}
    assert decoded.extra is None


def test_duplicate_id_rejected() -> None:
    with pytest.raises(ValueError, match="already registered"):

        @wire.serializable(0x01)
        class Clash:
            x: int


def test_id_out_of_range_rejected() -> None:
    with pytest.raises(ValueError):
        wire.serializable(0x100)


def test_unregistered_type_rejected() -> None:
    @dataclasses.dataclass
    class Stranger:
        x: int

    with pytest.raises(ValueError, match="not registered"):
        wire.encode(Stranger(1))


def test_unknown_id_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown message_id"):
        wire.decode(b"\xee\x80")


def test_codecs_have_separate_namespaces() -> None:
    other = ProtocolCodec("other")

    @other.serializable(0x01)
    class Elsewhere:
        value: int

    assert other.get_registry() == {0x01: Elsewhere}
    assert wire.get_registry()[0x01] is Simple

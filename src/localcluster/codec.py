"""Declarative msgpack codec for the member wire protocol.

A ``ProtocolCodec`` owns a namespace of one-byte message ids. Decorating a
class with ``@codec.serializable(id)`` turns it into a frozen slotted
dataclass and registers it for ``encode``/``decode``.

Wire format of an encoded message: ``[message_id:1][msgpack(fields)]``.
Tuple-typed fields travel as msgpack arrays and come back as tuples.
"""

from __future__ import annotations

import struct
from dataclasses import asdict, dataclass, fields, is_dataclass
from typing import Any, TypeVar, get_args, get_origin, get_type_hints

import msgpack

T = TypeVar("T")


def _get_field_types(cls: type) -> dict[str, Any]:
    try:
        return get_type_hints(cls)
    except (NameError, TypeError):
        return {f.name: f.type for f in fields(cls)}


def _needs_conversion(field_type: Any) -> bool:
    origin = get_origin(field_type)

    if origin is tuple or field_type is tuple:
        return True

    if origin is list:
        args = get_args(field_type)
        if args:
            return _needs_conversion(args[0])

    return False


def _encode_value(value: Any, field_type: Any) -> Any:
    if value is None:
        return None

    origin = get_origin(field_type)

    if origin is tuple or field_type is tuple:
        return list(value)

    if origin is list:
        args = get_args(field_type)
        if args:
            return [_encode_value(v, args[0]) for v in value]

    return value


def _decode_value(value: Any, field_type: Any) -> Any:
    if value is None:
        return None

    origin = get_origin(field_type)

    if origin is tuple or field_type is tuple:
        args = get_args(field_type)
        # tuple[X, ...]
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(_decode_value(v, args[0]) for v in value)
        if args:
            return tuple(_decode_value(v, t) for v, t in zip(value, args))
        return tuple(value)

    if origin is list:
        args = get_args(field_type)
        if args:
            return [_decode_value(v, args[0]) for v in value]

    return value


class ProtocolCodec:
    """Scoped codec for one protocol.

    Example:
        wire = ProtocolCodec("wire")

        @wire.serializable(0x01)
        class Hello:
            name: str

        data = wire.encode(Hello("x1"))
        msg = wire.decode(data)
    """

    def __init__(self, name: str):
        self.name = name
        self._registry: dict[int, type] = {}
        self._class_to_id: dict[type, int] = {}
        self._tuple_fields: dict[type, dict[str, Any]] = {}

    def serializable(
        self,
        message_id: int,
        *,
        frozen: bool = True,
        slots: bool = True,
    ):
        """Register a message type within this protocol's namespace."""
        if not (0x00 <= message_id <= 0xFF):
            raise ValueError(f"message_id must be 0x00-0xFF, got {hex(message_id)}")

        if message_id in self._registry:
            existing = self._registry[message_id]
            raise ValueError(
                f"[{self.name}] message_id {hex(message_id)} already registered "
                f"to {existing.__name__}"
            )

        def decorator(cls: type[T]) -> type[T]:
            if not is_dataclass(cls):
                cls = dataclass(frozen=frozen, slots=slots)(cls)

            self._registry[message_id] = cls
            self._class_to_id[cls] = message_id

            tuple_fields = {
                name: ftype
                for name, ftype in _get_field_types(cls).items()
                if _needs_conversion(ftype)
            }
            if tuple_fields:
                self._tuple_fields[cls] = tuple_fields

            cls.__wire_message_id__ = message_id  # type: ignore[attr-defined]
            cls.__wire_protocol__ = self.name  # type: ignore[attr-defined]

            return cls

        return decorator

    def encode(self, msg: Any) -> bytes:
        """Encode a message registered with this protocol."""
        cls = type(msg)
        message_id = self._class_to_id.get(cls)

        if message_id is None:
            raise ValueError(
                f"Type {cls.__name__} is not registered with protocol '{self.name}'"
            )

        data = asdict(msg)

        for field_name, field_type in self._tuple_fields.get(cls, {}).items():
            if field_name in data:
                data[field_name] = _encode_value(data[field_name], field_type)

        payload = msgpack.packb(data, use_bin_type=True)
        return struct.pack("B", message_id) + payload

    def decode(self, data: bytes) -> Any:
        """Decode bytes to a message registered with this protocol."""
        if len(data) < 2:
            raise ValueError("Data too short")

        message_id = data[0]
        cls = self._registry.get(message_id)

        if cls is None:
            raise ValueError(f"[{self.name}] Unknown message_id: {hex(message_id)}")

        fields_dict = msgpack.unpackb(data[1:], raw=False, strict_map_key=False)

        for field_name, field_type in self._tuple_fields.get(cls, {}).items():
            if field_name in fields_dict:
                fields_dict[field_name] = _decode_value(fields_dict[field_name], field_type)

        return cls(**fields_dict)

    def get_registry(self) -> dict[int, type]:
        """Get a copy of this protocol's registry."""
        return self._registry.copy()

    def get_message_id(self, cls: type) -> int | None:
        return self._class_to_id.get(cls)

"""Self-describing value encoding for RPC messages and persisted state.

Values are written as length-prefixed frames. Dataclass fields whose names
start with an underscore are never transmitted, and a warning is printed the
first time such a class is seen. Decoding into an existing dataclass instance
follows "zero values do not overwrite" semantics, so a warning is printed when
the target already holds non-default data.
"""

from __future__ import annotations

import base64
import dataclasses
import enum
import json
import struct
import threading
from typing import Any, BinaryIO

__all__ = [
    "LabGobError",
    "LabEncoder",
    "LabDecoder",
    "register",
    "register_name",
    "error_count",
]

_HEADER = struct.Struct(">I")
_PRIMITIVES = (bool, int, float, str)

_lock = threading.Lock()
_error_count = 0
_checked: set[type] = set()
_name_to_type: dict[str, type] = {}
_type_to_name: dict[type, str] = {}


class LabGobError(Exception):
    """Raised when a value cannot be encoded, decoded or registered."""


def error_count() -> int:
    """Number of warnings and errors reported so far."""
    with _lock:
        return _error_count


def _is_named_type(cls: type) -> bool:
    return dataclasses.is_dataclass(cls) or issubclass(cls, enum.Enum)


def _default_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _register(cls: type, name: str, strict: bool) -> str:
    with _lock:
        known = _type_to_name.get(cls)
        if not strict and known is not None:
            return known
        owner = _name_to_type.get(name)
        if strict:
            if known is not None and known != name:
                raise LabGobError(f"type {cls.__qualname__} already registered as {known!r}")
            if owner is not None and owner is not cls:
                raise LabGobError(f"name {name!r} already registered for {owner.__qualname__}")
        _type_to_name[cls] = name
        _name_to_type[name] = cls
        return name


def _named_class(value: Any) -> type:
    cls = value if isinstance(value, type) else type(value)
    if not _is_named_type(cls):
        raise LabGobError(f"only dataclasses and enums can be registered, not {cls.__name__}")
    return cls


def register(value: Any) -> None:
    """Register a dataclass or enum (an instance or the class) under its default name."""
    _check_value(value)
    cls = _named_class(value)
    _register(cls, _default_name(cls), strict=True)


def register_name(name: str, value: Any) -> None:
    """Register a dataclass or enum under an explicit name."""
    _check_value(value)
    _register(_named_class(value), name, strict=True)


def _check_type(cls: type) -> None:
    global _error_count
    with _lock:
        if cls in _checked:
            return
        _checked.add(cls)
    if not dataclasses.is_dataclass(cls):
        return
    for f in dataclasses.fields(cls):
        if f.name.startswith("_"):
            print(
                f"labgob error: private field {f.name} of {cls.__name__} "
                "in RPC or persist/snapshot will not be transmitted"
            )
            with _lock:
                _error_count += 1


def _check_value(value: Any) -> None:
    if isinstance(value, type):
        _check_type(value)
    elif dataclasses.is_dataclass(value):
        _check_type(type(value))
        for f in dataclasses.fields(value):
            _check_value(getattr(value, f.name))
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_value(item)
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_value(key)
            _check_value(item)


def _check_default(value: Any, depth: int = 2, name: str = "") -> None:
    global _error_count
    if depth > 3:
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            inner = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name), depth + 1, inner)
    elif isinstance(value, _PRIMITIVES) and value:
        with _lock:
            if _error_count < 1:
                what = name or type(value).__name__
                print(f"labgob warning: Decoding into a non-default variable/field {what} may not work")
            _error_count += 1


def _public_fields(obj_or_cls: Any) -> list[dataclasses.Field]:
    return [f for f in dataclasses.fields(obj_or_cls) if not f.name.startswith("_")]


def _to_tree(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, enum.Enum):
        cls = type(value)
        return {"e": _register(cls, _default_name(cls), strict=False), "v": _to_tree(value.value)}
    if isinstance(value, (int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"y": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return {"l": [_to_tree(item) for item in value]}
    if isinstance(value, tuple):
        return {"t": [_to_tree(item) for item in value]}
    if isinstance(value, dict):
        return {"m": [[_to_tree(k), _to_tree(v)] for k, v in value.items()]}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        cls = type(value)
        name = _register(cls, _default_name(cls), strict=False)
        return {"d": name, "f": {f.name: _to_tree(getattr(value, f.name)) for f in _public_fields(value)}}
    raise LabGobError(f"cannot encode value of type {type(value).__name__}")


def _lookup(name: Any) -> type:
    with _lock:
        cls = _name_to_type.get(name)
    if cls is None:
        raise LabGobError(f"type {name!r} is not registered")
    return cls


def _build(cls: type, values: dict[str, Any]) -> Any:
    by_name = {f.name: f for f in dataclasses.fields(cls)}
    init_kwargs: dict[str, Any] = {}
    late: dict[str, Any] = {}
    for name, item in values.items():
        f = by_name.get(name)
        if f is None:
            continue
        (init_kwargs if f.init else late)[name] = item
    try:
        obj = cls(**init_kwargs)
    except TypeError as exc:
        raise LabGobError(f"cannot construct {cls.__qualname__}: {exc}") from exc
    for name, item in late.items():
        object.__setattr__(obj, name, item)
    return obj


def _from_tree(tree: Any) -> Any:
    if tree is None or isinstance(tree, (bool, int, float, str)):
        return tree
    if not isinstance(tree, dict):
        raise LabGobError("malformed data")
    try:
        if "l" in tree:
            return [_from_tree(item) for item in tree["l"]]
        if "t" in tree:
            return tuple(_from_tree(item) for item in tree["t"])
        if "y" in tree:
            return base64.b64decode(tree["y"])
        if "m" in tree:
            return {_from_tree(k): _from_tree(v) for k, v in tree["m"]}
        if "e" in tree:
            return _lookup(tree["e"])(_from_tree(tree["v"]))
        if "d" in tree:
            cls = _lookup(tree["d"])
            return _build(cls, {k: _from_tree(v) for k, v in tree["f"].items()})
    except (TypeError, ValueError, KeyError) as exc:
        raise LabGobError(f"malformed data: {exc}") from exc
    raise LabGobError("malformed data")


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, enum.Enum):
        return False
    return isinstance(value, (bool, int, float, str, bytes, list, tuple, dict)) and not value


def _matches(value: Any, target: type) -> bool:
    if target is object:
        return True
    if target is float and isinstance(value, int) and not isinstance(value, bool):
        return True
    return isinstance(value, target)


class LabEncoder:
    """Writes encoded values to a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def encode(self, value: Any) -> None:
        """Encode one value as a frame."""
        _check_value(value)
        payload = json.dumps(_to_tree(value), separators=(",", ":")).encode("utf-8")
        self._stream.write(_HEADER.pack(len(payload)) + payload)


class LabDecoder:
    """Reads values written by a LabEncoder."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def _read_frame(self) -> Any:
        header = self._stream.read(_HEADER.size)
        if not header:
            raise EOFError("no more values")
        if len(header) < _HEADER.size:
            raise LabGobError("truncated frame header")
        (size,) = _HEADER.unpack(header)
        payload = self._stream.read(size)
        if len(payload) < size:
            raise LabGobError("truncated frame")
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LabGobError(f"malformed frame: {exc}") from exc

    def decode(self, target: Any = None) -> Any:
        """Decode the next value.

        ``target`` may be None, a type the value must have, or a dataclass
        instance to update in place (fields holding zero values are left as
        they are). The decoded value, or the updated instance, is returned.
        """
        _check_value(target)
        if target is not None and not isinstance(target, type):
            _check_default(target)
        value = _from_tree(self._read_frame())
        if target is None:
            return value
        if isinstance(target, type):
            if not _matches(value, target):
                raise LabGobError(f"expected {target.__name__}, got {type(value).__name__}")
            return value
        if dataclasses.is_dataclass(target):
            if type(value) is not type(target):
                raise LabGobError(f"expected {type(target).__name__}, got {type(value).__name__}")
            for f in _public_fields(value):
                item = getattr(value, f.name)
                if not _is_zero(item):
                    object.__setattr__(target, f.name, item)
            return target
        return value
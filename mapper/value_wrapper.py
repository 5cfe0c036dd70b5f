"""
Conversion of Python values to and from what a stored document can hold.

Values with a native document representation (None, bool, 64-bit int, float,
str, bytes, ObjectId, Decimal) are stored as-is, and lists and dicts are
converted item by item. Everything else that can be stored losslessly is
written as a tagged sub-document:

    {"__kind__": "<tag>", "value": <payload>}
"""
import datetime
import decimal
import enum
import importlib
import uuid
from typing import Any, Callable, Dict, List

from bson import Decimal128, ObjectId

from mapper_errors import UnsupportedValueKind

KIND_KEY = "__kind__"
VALUE_KEY = "value"

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

NATIVE_TYPES = (type(None), bool, float, str, bytes, ObjectId)


def _tagged(kind: str, payload: Any) -> Dict[str, Any]:
    return {KIND_KEY: kind, VALUE_KEY: payload}


def _wrap_enum(value: enum.Enum) -> Dict[str, Any]:
    cls = type(value)
    if "<locals>" in cls.__qualname__:
        raise UnsupportedValueKind(value, "enum classes must be importable at module level")
    return _tagged("enum", {"type": f"{cls.__module__}:{cls.__qualname__}", "name": value.name})


def _wrap_decimal(value: decimal.Decimal) -> Decimal128:
    try:
        return Decimal128(value)
    except decimal.DecimalException as e:
        raise UnsupportedValueKind(value, "not representable as a 128-bit decimal") from e


def _wrap_dict(value: Dict[Any, Any]) -> Dict[str, Any]:
    wrapped = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise UnsupportedValueKind(value, f"document keys must be str, got {type(key).__name__}")
        if key.startswith("$") or "." in key:
            raise UnsupportedValueKind(value, f"invalid document key {key!r}")
        wrapped[key] = wrap(item)
    # A user dict that happens to carry the tag key is escaped so it never reads back as a tag
    if KIND_KEY in wrapped:
        return _tagged("dict", wrapped)
    return wrapped


def wrap(value: Any) -> Any:
    """Converts a Python value into its stored form, raising UnsupportedValueKind if it has none."""
    # Enum before the primitives: IntEnum and str-mixin enums are ints and strs too
    if isinstance(value, enum.Enum):
        return _wrap_enum(value)
    if isinstance(value, NATIVE_TYPES):
        return value
    if isinstance(value, int):
        if INT64_MIN <= value <= INT64_MAX:
            return value
        return _tagged("bigint", str(value))
    if isinstance(value, decimal.Decimal):
        return _wrap_decimal(value)
    # datetime before date, it is a subclass
    if isinstance(value, datetime.datetime):
        return _tagged("datetime", value.isoformat())
    if isinstance(value, datetime.date):
        return _tagged("date", value.isoformat())
    if isinstance(value, datetime.time):
        return _tagged("time", value.isoformat())
    if isinstance(value, datetime.timedelta):
        return _tagged("timedelta", [value.days, value.seconds, value.microseconds])
    if isinstance(value, uuid.UUID):
        return _tagged("uuid", value.hex)
    if isinstance(value, dict):
        return _wrap_dict(value)
    if isinstance(value, list):
        return [wrap(item) for item in value]
    if isinstance(value, tuple):
        return _tagged("tuple", [wrap(item) for item in value])
    if isinstance(value, frozenset):
        return _tagged("frozenset", [wrap(item) for item in value])
    if isinstance(value, set):
        return _tagged("set", [wrap(item) for item in value])
    raise UnsupportedValueKind(value)


def _unwrap_items(payload: List[Any]) -> List[Any]:
    return [unwrap(item) for item in payload]


def _resolve_enum(payload: Dict[str, Any]) -> enum.Enum:
    module_name, _, qualname = payload["type"].partition(":")
    try:
        target: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as e:
        raise UnsupportedValueKind(payload, f"cannot resolve enum {payload['type']!r}") from e
    if not (isinstance(target, type) and issubclass(target, enum.Enum)):
        raise UnsupportedValueKind(payload, f"{payload['type']!r} is not an Enum")
    return target[payload["name"]]


_DECODERS: Dict[str, Callable[[Any], Any]] = {
    "bigint": int,
    "datetime": datetime.datetime.fromisoformat,
    "date": datetime.date.fromisoformat,
    "time": datetime.time.fromisoformat,
    "timedelta": lambda p: datetime.timedelta(days=p[0], seconds=p[1], microseconds=p[2]),
    "uuid": uuid.UUID,
    "tuple": lambda p: tuple(_unwrap_items(p)),
    "set": lambda p: set(_unwrap_items(p)),
    "frozenset": lambda p: frozenset(_unwrap_items(p)),
    "enum": _resolve_enum,
    "dict": lambda p: {k: unwrap(v) for k, v in p.items()},
}


def unwrap(value: Any) -> Any:
    """Converts a stored value back into the Python value it was wrapped from."""
    if isinstance(value, dict):
        if KIND_KEY in value:
            kind = value[KIND_KEY]
            decoder = _DECODERS.get(kind)
            if decoder is None:
                raise UnsupportedValueKind(value, f"unknown stored kind {kind!r}")
            return decoder(value.get(VALUE_KEY))
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return _unwrap_items(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value

"""
Tolerant field decoding for remote records.

The billing API (and the dashboard CSV export) spell the same field in
several ways: camelCase, human-readable with spaces, snake_case. Fields are
described once as data - a priority-ordered list of candidate keys plus a
coercion kind - and decoded without ever failing the whole record.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple

from .errors import SchemaError

logger = logging.getLogger(__name__)

_MISSING = object()


def _finite(value: float) -> float:
    if not math.isfinite(value):
        raise SchemaError(f"not a finite number: {value!r}")
    return value


def _coerce_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise SchemaError(f"expected string, got {type(value).__name__}")


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise SchemaError("expected integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(_finite(value))
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        try:
            return int(text)
        except ValueError:
            try:
                return int(_finite(float(text)))
            except ValueError:
                raise SchemaError(f"not an integer: {value!r}")
    raise SchemaError(f"expected integer, got {type(value).__name__}")


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        raise SchemaError("expected number, got bool")
    if isinstance(value, (int, float)):
        try:
            return _finite(float(value))
        except OverflowError:
            raise SchemaError(f"number out of range: {value!r}")
    if isinstance(value, str):
        try:
            return _finite(float(value.strip().replace(",", "")))
        except ValueError:
            raise SchemaError(f"not a number: {value!r}")
    raise SchemaError(f"expected number, got {type(value).__name__}")


def _coerce_money(value: Any) -> float:
    """Currency amount such as ``"$0.43"``; ``"-"`` and empty mean absent."""
    if isinstance(value, str):
        text = value.strip()
        if text in ("", "-"):
            raise SchemaError("no amount")
        text = text.lstrip("$").strip()
        return _coerce_float(text)
    return _coerce_float(value)


def _coerce_epoch_ms(value: Any) -> datetime:
    millis = _coerce_int(value)
    if millis <= 0:
        raise SchemaError(f"not a timestamp: {value!r}")
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        raise SchemaError(f"timestamp out of range: {value!r}")


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip().strip('"')
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise SchemaError(f"not an ISO-8601 date: {value!r}")
    else:
        raise SchemaError(f"expected date string, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        raise SchemaError(f"date out of range: {value!r}")


COERCERS: Dict[str, Callable[[Any], Any]] = {
    "str": _coerce_str,
    "int": _coerce_int,
    "float": _coerce_float,
    "money": _coerce_money,
    "epoch_ms": _coerce_epoch_ms,
    "datetime": _coerce_datetime,
}

_DEFAULTS: Dict[str, Any] = {
    "str": "",
    "int": 0,
    "float": 0.0,
    "money": 0.0,
    "epoch_ms": None,
    "datetime": None,
}


@dataclass(frozen=True)
class FieldSpec:
    """How to find and coerce one logical field.

    Attributes:
        name: Name of the field in the decoded output
        keys: Candidate keys in priority order; dotted keys descend into
            nested objects (``"tokenUsage.totalCents"``)
        kind: Coercion kind, a key of ``COERCERS``
        default: Value used when no candidate yields a usable value;
            defaults to the zero value of ``kind``
    """
    name: str
    keys: Tuple[str, ...]
    kind: str = "str"
    default: Any = _MISSING

    def __post_init__(self):
        if self.kind not in COERCERS:
            raise ValueError(f"Unknown field kind: {self.kind}")
        if not self.keys:
            raise ValueError(f"Field {self.name} needs at least one key")

    @property
    def fallback(self) -> Any:
        if self.default is _MISSING:
            return _DEFAULTS[self.kind]
        return self.default


def field(name: str, *keys: str, kind: str = "str", default: Any = _MISSING) -> FieldSpec:
    """Shorthand for building a ``FieldSpec``; ``name`` is also the first key."""
    return FieldSpec(name=name, keys=tuple(keys) or (name,), kind=kind, default=default)


def lookup(record: Mapping[str, Any], key: str) -> Any:
    """Return the value at ``key`` (dotted for nesting) or a missing marker."""
    current: Any = record
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def decode_field(record: Mapping[str, Any], spec: FieldSpec) -> Any:
    """Decode one field, trying each candidate key in order."""
    coerce = COERCERS[spec.kind]
    for key in spec.keys:
        value = lookup(record, key)
        if value is _MISSING or value is None:
            continue
        try:
            return coerce(value)
        except SchemaError as e:
            logger.debug("Field %s: ignoring %r under key %r (%s)", spec.name, value, key, e)
    return spec.fallback


def decode(record: Mapping[str, Any], specs: Sequence[FieldSpec]) -> Dict[str, Any]:
    """Decode every field in ``specs`` from ``record``.

    Never raises for bad values: each field falls back to its default.
    A non-mapping record decodes to all defaults.
    """
    if not isinstance(record, Mapping):
        logger.debug("Expected an object, got %s", type(record).__name__)
        record = {}
    return {spec.name: decode_field(record, spec) for spec in specs}

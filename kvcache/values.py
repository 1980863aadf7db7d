"""
Encoding of cache values.

Callers can state how a value is stored by wrapping it: ``Raw`` keeps the
value verbatim, ``Structured`` always JSON-encodes it. Unwrapped values
follow a fixed type rule (see ``encode_value``). Reads attempt a JSON parse
and fall back to the stored string.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

EncodedValue = Union[str, bytes, int, float]


@dataclass(frozen=True)
class Raw:
    """Store ``value`` as-is."""
    value: EncodedValue


@dataclass(frozen=True)
class Structured:
    """Store ``value`` as JSON."""
    value: Any


def encode_value(value: Any) -> EncodedValue:
    """Turn a value into what gets written to the backend.

    Untagged dicts, lists, tuples and bools are JSON-encoded; strings,
    bytes and numbers are written verbatim.
    """
    if isinstance(value, Raw):
        return value.value
    if isinstance(value, Structured):
        return json.dumps(value.value)
    if isinstance(value, (dict, list, tuple, bool)):
        return json.dumps(value)
    if isinstance(value, (str, bytes, int, float)):
        return value
    raise TypeError(
        f"Cannot store value of type {type(value).__name__}; "
        "wrap it in Structured() or convert it to a string"
    )


def decode_value(stored: Any) -> Any:
    """Parse a stored value, falling back to the raw reply."""
    if stored is None:
        return None
    try:
        return json.loads(stored)
    except (TypeError, ValueError):
        return stored

"""Conversion between host values and the byte strings stored in document value slots.

Numbers are stored with an order-preserving encoding so that byte-wise
comparison of two serialised values agrees with numeric comparison; this is
what lets value-range queries work on numbers without knowing their type.
"""

from __future__ import annotations

from datetime import date, datetime
import math
import struct

from search_bridge.exceptions import InvalidArgumentError


_SIGN_BIT = 1 << 63
_MASK = (1 << 64) - 1

DATE_FORMAT = "%Y%m%d"
DATETIME_FORMAT = "%Y%m%d%H%M%S"


def sortable_serialise(value: float) -> bytes:
    """Encode a number as 8 bytes whose lexical order matches numeric order."""
    value = float(value)
    if math.isnan(value):
        raise InvalidArgumentError("NaN cannot be stored as a sortable value")
    if value == 0.0:
        value = 0.0  # fold -0.0 onto 0.0
    (bits,) = struct.unpack(">Q", struct.pack(">d", value))
    bits = (~bits & _MASK) if bits & _SIGN_BIT else bits | _SIGN_BIT
    return struct.pack(">Q", bits)


def sortable_unserialise(data: bytes) -> float:
    """Decode a value produced by :func:`sortable_serialise`."""
    if len(data) != 8:
        raise InvalidArgumentError(f"Sortable values are 8 bytes long, got {len(data)}")
    (bits,) = struct.unpack(">Q", bytes(data))
    bits = bits & ~_SIGN_BIT if bits & _SIGN_BIT else ~bits & _MASK
    (value,) = struct.unpack(">d", struct.pack(">Q", bits))
    return value


def to_value(value: object) -> bytes:
    """Serialise a host value for storage in a value slot.

    ``bytes`` are stored as-is, ``str`` as UTF-8, numbers with
    :func:`sortable_serialise` and dates/datetimes as fixed-width digit
    strings (which sort chronologically).
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bool):
        raise InvalidArgumentError("bool is not a storable value type")
    if isinstance(value, (int, float)):
        return sortable_serialise(value)
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT).encode("ascii")
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT).encode("ascii")
    raise InvalidArgumentError(f"Cannot store value of type {type(value).__name__}")


def from_value(data: bytes, kind: type = bytes) -> object:
    """Deserialise a slot value into ``kind`` (bytes, str, int, float, date or datetime)."""
    if kind is bytes:
        return bytes(data)
    if kind is str:
        try:
            return bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidArgumentError(f"Value is not valid UTF-8: {exc}") from exc
    if kind is float:
        return sortable_unserialise(data)
    if kind is int:
        return int(sortable_unserialise(data))
    if kind is datetime:
        return datetime.strptime(bytes(data).decode("ascii"), DATETIME_FORMAT)
    if kind is date:
        return datetime.strptime(bytes(data).decode("ascii"), DATE_FORMAT).date()
    raise InvalidArgumentError(f"Cannot load value as {kind.__name__}")

"""Value canonicalization and UUID/identifier normalization."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from genericble.core.errors import ValueEncodingError

_HEX_RE = re.compile(r"^[0-9a-f]*$")
_BASE_UUID_SUFFIX = "00001000800000805f9b34fb"


def normalize_uuid(value: str) -> str:
    normalized = value.strip().lower().replace("-", "")
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if len(normalized) == 32 and normalized.startswith("0000") and normalized.endswith(
        _BASE_UUID_SUFFIX
    ):
        return normalized[4:8]
    return normalized


def normalize_identifier(value: str) -> str:
    return value.strip().lower()


def parse_uuid_filter(value: str | Iterable[str] | None) -> frozenset[str]:
    """Turn a CSV string or iterable of UUIDs into a normalized set.

    An empty result means "no filter".
    """
    if value is None:
        return frozenset()
    items = value.split(",") if isinstance(value, str) else value
    return frozenset(normalize_uuid(item) for item in items if item and item.strip())


def to_hex(value: Any, length: int = 1) -> str:
    """Canonicalize a write value to an even-length, zero-padded hex string.

    Accepts bytes-like values, lists of byte values, non-negative integers and
    hex strings (an optional ``0x`` prefix and whitespace are ignored).
    Integers and hex strings are padded to at least `length` bytes.
    """
    if length < 1:
        raise ValueEncodingError(f"length must be at least 1, got {length}")

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, bool):
        raise ValueEncodingError("Boolean is not a valid characteristic value")
    if isinstance(value, (list, tuple)):
        try:
            return bytes(value).hex()
        except (TypeError, ValueError) as exc:
            raise ValueEncodingError(f"Invalid byte array {value!r}: {exc}") from exc
    if isinstance(value, int):
        if value < 0:
            raise ValueEncodingError(f"Integer value must be non-negative, got {value}")
        digits = format(value, "x")
    elif isinstance(value, str):
        digits = value.strip().lower().replace(" ", "")
        if digits.startswith("0x"):
            digits = digits[2:]
        if not _HEX_RE.match(digits):
            raise ValueEncodingError(f"Value {value!r} must contain only [0-9a-f]")
    else:
        raise ValueEncodingError(f"Unsupported value type {type(value).__name__}")

    digits = digits.rjust(length * 2, "0")
    if len(digits) % 2 != 0:
        digits = "0" + digits
    return digits


def to_bytes(value: Any, length: int = 1) -> bytes:
    return bytes.fromhex(to_hex(value, length))

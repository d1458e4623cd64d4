"""Run and event identifiers: ``<prefix>-<ULID>`` strings that sort by creation time."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
EVENT_ID_PREFIX: Final[str] = "evt"

_SEPARATOR: Final[str] = "-"
_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Generate a 26-character Crockford Base32 ULID."""

    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(ts_ms, bool) or not isinstance(ts_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(ts_ms).__name__}")
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {ts_ms}")

    provider = secrets.token_bytes if randbytes is None else randbytes
    entropy = bytes(provider(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(entropy, "big")
    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    if _DECODE_TABLE[value[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def generate_run_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{RUN_ID_PREFIX}{_SEPARATOR}{ulid}"


def validate_run_id(run_id: str) -> None:
    _validate_prefixed(run_id, RUN_ID_PREFIX)


def generate_event_id() -> str:
    return f"{EVENT_ID_PREFIX}{_SEPARATOR}{generate_ulid()}"


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""

    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


def _validate_prefixed(id_str: str, prefix: str) -> None:
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    lead = f"{prefix}{_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix {lead!r} in {id_str!r}")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix {prefix!r}: {exc}") from exc


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_event_id",
    "generate_run_id",
    "generate_ulid",
    "short_id",
    "validate_run_id",
    "validate_ulid",
]

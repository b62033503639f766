"""Generation identifiers: time-ordered UUIDs whose timestamps run backwards."""

from __future__ import annotations

import os
import time
import uuid
from datetime import datetime, timedelta, timezone

# Seconds subtracted from so that newer generations sort first.
_TIME_BASE_SECONDS = 253370761200
_NANOS_BASE_NEW = 999_999_999
_NANOS_BASE_DECODE = 999_000_000
_MAX_MILLIS = (1 << 48) - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NAIVE_EPOCH = datetime(1970, 1, 1)


def uuid7(seconds: int, nanos: int) -> uuid.UUID:
    """Build a version 7 UUID carrying the given Unix timestamp at millisecond precision."""
    if not 0 <= nanos <= 999_999_999:
        raise ValueError("nanos must be within 0..999999999")
    millis = seconds * 1000 + nanos // 1_000_000
    if not 0 <= millis <= _MAX_MILLIS:
        raise ValueError("timestamp does not fit in 48 bits of milliseconds")
    random_bits = int.from_bytes(os.urandom(10), "big")
    rand_a = random_bits >> 68 & 0xFFF
    rand_b = random_bits & ((1 << 62) - 1)
    value = (millis << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    return uuid.UUID(int=value)


def uuid7_timestamp(generation: uuid.UUID) -> tuple[int, int] | None:
    """Return the (seconds, nanos) stored in a version 7 UUID, or None for other versions."""
    if generation.variant != uuid.RFC_4122 or generation.version != 7:
        return None
    millis = generation.int >> 80
    return millis // 1000, (millis % 1000) * 1_000_000


def _unix_parts(now: datetime | None) -> tuple[int, int]:
    if now is None:
        total = time.time_ns()
        return total // 1_000_000_000, total % 1_000_000_000
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = now - _EPOCH
    return delta.days * 86400 + delta.seconds, delta.microseconds * 1000


def new_generation(now: datetime | None = None) -> uuid.UUID:
    """Create a generation UUID whose embedded time decreases as ``now`` increases."""
    seconds, nanos = _unix_parts(now)
    return uuid7(_TIME_BASE_SECONDS - seconds, _NANOS_BASE_NEW - nanos)


def generation_to_datetime(generation: uuid.UUID) -> datetime:
    """Recover the (naive, UTC) creation time encoded in a generation UUID."""
    seconds, nanos = uuid7_timestamp(generation) or (0, 0)
    seconds = _TIME_BASE_SECONDS - seconds
    nanos = _NANOS_BASE_DECODE - nanos
    try:
        return _NAIVE_EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)
    except OverflowError:
        return datetime.min
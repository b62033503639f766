"""CRC-64/ECMA-182 (non-reflected, no final XOR) with a chainable initial value."""

from __future__ import annotations

POLYNOMIAL = 0x42F0E1EBA9EA3693
_MASK = (1 << 64) - 1


def _build_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte << 56
        for _ in range(8):
            crc = ((crc << 1) ^ POLYNOMIAL) if crc & (1 << 63) else (crc << 1)
            crc &= _MASK
        table.append(crc)
    return tuple(table)


_TABLE = _build_table()


def crc64(data: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the CRC-64/ECMA-182 of ``data``, continuing from ``initial``."""
    if not 0 <= initial <= _MASK:
        raise ValueError("initial must be an unsigned 64-bit value")
    crc = initial
    for byte in bytes(data):
        crc = ((crc << 8) & _MASK) ^ _TABLE[((crc >> 56) ^ byte) & 0xFF]
    return crc
"""Table-driven CRC-32 (reflected polynomial 0xEDB88320)."""

from __future__ import annotations

_POLYNOMIAL = 0xEDB88320
_MASK = 0xFFFFFFFF


def _make_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        value = byte
        for _ in range(8):
            value = (value >> 1) ^ _POLYNOMIAL if value & 1 else value >> 1
        table.append(value)
    return tuple(table)


_TABLE = _make_table()


def sparse_crc32(crc: int, data: bytes | bytearray | memoryview) -> int:
    """Continue a CRC-32 from ``crc`` over ``data`` and return the new value.

    Starting from 0 gives the standard CRC-32 of ``data``; feeding the result
    back in with more data gives the CRC of the concatenation.
    """
    value = (crc & _MASK) ^ _MASK
    for byte in bytes(data):
        value = _TABLE[(value ^ byte) & 0xFF] ^ (value >> 8)
    return value ^ _MASK
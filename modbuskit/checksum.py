"""Checksums used by Modbus serial framing: CRC-16 and LRC."""

from __future__ import annotations

_CRC_POLY = 0xA001


def _build_crc_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = 0
        b = i
        for _ in range(8):
            if (crc ^ b) & 0x0001:
                crc = (crc >> 1) ^ _CRC_POLY
            else:
                crc >>= 1
            b >>= 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _build_crc_table()


def crc16(data: bytes) -> int:
    """Compute the Modbus CRC-16 of data."""
    val = 0xFFFF
    for byte in bytes(data):
        val = (val >> 8) ^ _CRC_TABLE[(val ^ byte) & 0xFF]
    return val


class LRC:
    """Longitudinal redundancy check accumulator."""

    def __init__(self) -> None:
        self._sum = 0

    def reset(self) -> "LRC":
        """Clear the running sum."""
        self._sum = 0
        return self

    def push(self, *args: int) -> "LRC":
        """Add bytes to the running sum."""
        for byte in args:
            self._sum = (self._sum + byte) & 0xFF
        return self

    def value(self) -> int:
        """Return the LRC byte: the two's complement of the sum."""
        return (-self._sum) & 0xFF
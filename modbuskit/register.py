"""Thread-safe register storage for a Modbus server node."""

from __future__ import annotations

import struct
import threading
from collections.abc import Iterable, Sequence

from .protocol import ExceptionCode, ExceptionError


def get_bits(buf: Sequence[int], start: int, n_bits: int) -> int:
    """Return n_bits (at most 8) bits of buf starting at bit index start."""
    byte_offset, pre_bits = divmod(start, 8)
    word = buf[byte_offset]
    if pre_bits + n_bits > 8:
        word |= buf[byte_offset + 1] << 8
    return (word >> pre_bits) & ((1 << n_bits) - 1)


def set_bits(buf: bytearray, start: int, n_bits: int, value: int) -> None:
    """Write the low n_bits (at most 8) of value into buf at bit index start."""
    byte_offset, pre_bits = divmod(start, 8)
    mask = ((1 << n_bits) - 1) << pre_bits
    new_value = (value << pre_bits) & mask
    spans_two = pre_bits + n_bits > 8
    word = buf[byte_offset]
    if spans_two:
        word |= buf[byte_offset + 1] << 8
    word = (word & ~mask & 0xFFFF) | new_value
    buf[byte_offset] = word & 0xFF
    if spans_two:
        buf[byte_offset + 1] = word >> 8


def _illegal_address() -> ExceptionError:
    return ExceptionError(ExceptionCode.ILLEGAL_DATA_ADDRESS)


def _in_range(address: int, quantity: int, start: int, size: int) -> bool:
    return address >= start and address + quantity <= start + size


def _chunks(quantity: int) -> Iterable[tuple[int, int]]:
    """Yield (bit offset, bit count) pairs of at most 8 bits covering quantity."""
    for offset in range(0, quantity, 8):
        yield offset, min(8, quantity - offset)


def _check_words(values: Sequence[int]) -> list[int]:
    words = [int(v) for v in values]
    if any(not 0 <= v <= 0xFFFF for v in words):
        raise ValueError("modbus: register values must be between 0 and 65535")
    return words


class NodeRegister:
    """Coils, discrete inputs, input and holding registers of one slave node."""

    def __init__(
        self,
        slave_id: int,
        coils_addr_start: int,
        coils_quantity: int,
        discrete_addr_start: int,
        discrete_quantity: int,
        input_addr_start: int,
        input_quantity: int,
        holding_addr_start: int,
        holding_quantity: int,
    ) -> None:
        self._lock = threading.RLock()
        self.slave_id = slave_id
        self.coils_addr_start = coils_addr_start
        self.coils_quantity = coils_quantity
        self.coils = bytearray((coils_quantity + 7) // 8)
        self.discrete_addr_start = discrete_addr_start
        self.discrete_quantity = discrete_quantity
        self.discrete = bytearray((discrete_quantity + 7) // 8)
        self.input_addr_start = input_addr_start
        self.inputs = [0] * input_quantity
        self.holding_addr_start = holding_addr_start
        self.holding = [0] * holding_quantity

    def __repr__(self) -> str:
        return f"NodeRegister(slave_id={self.slave_id})"

    # ---- parameters -------------------------------------------------------

    def coils_addr_param(self) -> tuple[int, int]:
        """Return the coils' start address and quantity."""
        return self.coils_addr_start, self.coils_quantity

    def discrete_param(self) -> tuple[int, int]:
        """Return the discrete inputs' start address and quantity."""
        return self.discrete_addr_start, self.discrete_quantity

    def input_addr_param(self) -> tuple[int, int]:
        """Return the input registers' start address and quantity."""
        return self.input_addr_start, len(self.inputs)

    def holding_addr_param(self) -> tuple[int, int]:
        """Return the holding registers' start address and quantity."""
        return self.holding_addr_start, len(self.holding)

    # ---- bit areas --------------------------------------------------------

    def _write_bits(
        self, buf: bytearray, start: int, size: int, address: int, quantity: int, values: bytes
    ) -> None:
        values = bytes(values or b"")
        with self._lock:
            if len(values) * 8 < quantity or not _in_range(address, quantity, start, size):
                raise _illegal_address()
            offset = address - start
            for idx, (bit, count) in enumerate(_chunks(quantity)):
                set_bits(buf, offset + bit, count, values[idx])

    def _read_bits(self, buf: bytearray, start: int, size: int, address: int, quantity: int) -> bytes:
        with self._lock:
            if not _in_range(address, quantity, start, size):
                raise _illegal_address()
            offset = address - start
            return bytes(get_bits(buf, offset + bit, count) for bit, count in _chunks(quantity))

    def write_coils(self, address: int, quantity: int, values: bytes) -> None:
        """Write quantity coils from packed bits, least significant bit first."""
        self._write_bits(
            self.coils, self.coils_addr_start, self.coils_quantity, address, quantity, values
        )

    def write_single_coil(self, address: int, value: bool) -> None:
        """Set or clear one coil."""
        self.write_coils(address, 1, bytes([1 if value else 0]))

    def read_coils(self, address: int, quantity: int) -> bytes:
        """Return quantity coils packed into bytes."""
        return self._read_bits(self.coils, self.coils_addr_start, self.coils_quantity, address, quantity)

    def read_single_coil(self, address: int) -> bool:
        """Return the state of one coil."""
        return self.read_coils(address, 1)[0] > 0

    def write_discretes(self, address: int, quantity: int, values: bytes) -> None:
        """Write quantity discrete inputs from packed bits."""
        self._write_bits(
            self.discrete, self.discrete_addr_start, self.discrete_quantity, address, quantity, values
        )

    def write_single_discrete(self, address: int, value: bool) -> None:
        """Set or clear one discrete input."""
        self.write_discretes(address, 1, bytes([1 if value else 0]))

    def read_discretes(self, address: int, quantity: int) -> bytes:
        """Return quantity discrete inputs packed into bytes."""
        return self._read_bits(
            self.discrete, self.discrete_addr_start, self.discrete_quantity, address, quantity
        )

    def read_single_discrete(self, address: int) -> bool:
        """Return the state of one discrete input."""
        return self.read_discretes(address, 1)[0] > 0

    # ---- word areas -------------------------------------------------------

    def _write_words_bytes(
        self, words: list[int], start: int, address: int, quantity: int, data: bytes
    ) -> None:
        data = bytes(data or b"")
        with self._lock:
            if len(data) != quantity * 2 or not _in_range(address, quantity, start, len(words)):
                raise _illegal_address()
            offset = address - start
            words[offset : offset + quantity] = struct.unpack(f">{quantity}H", data)

    def _write_words(self, words: list[int], start: int, address: int, values: Sequence[int]) -> None:
        values = _check_words(values)
        with self._lock:
            if not _in_range(address, len(values), start, len(words)):
                raise _illegal_address()
            offset = address - start
            words[offset : offset + len(values)] = values

    def _read_words(self, words: list[int], start: int, address: int, quantity: int) -> list[int]:
        with self._lock:
            if not _in_range(address, quantity, start, len(words)):
                raise _illegal_address()
            offset = address - start
            return words[offset : offset + quantity]

    def write_holdings_bytes(self, address: int, quantity: int, data: bytes) -> None:
        """Write quantity holding registers from big-endian bytes."""
        self._write_words_bytes(self.holding, self.holding_addr_start, address, quantity, data)

    def write_holdings(self, address: int, values: Sequence[int]) -> None:
        """Write holding registers from 16-bit values."""
        self._write_words(self.holding, self.holding_addr_start, address, values)

    def read_holdings_bytes(self, address: int, quantity: int) -> bytes:
        """Return quantity holding registers as big-endian bytes."""
        words = self.read_holdings(address, quantity)
        return struct.pack(f">{len(words)}H", *words)

    def read_holdings(self, address: int, quantity: int) -> list[int]:
        """Return quantity holding registers."""
        return self._read_words(self.holding, self.holding_addr_start, address, quantity)

    def write_inputs_bytes(self, address: int, quantity: int, data: bytes) -> None:
        """Write quantity input registers from big-endian bytes."""
        self._write_words_bytes(self.inputs, self.input_addr_start, address, quantity, data)

    def write_inputs(self, address: int, values: Sequence[int]) -> None:
        """Write input registers from 16-bit values."""
        self._write_words(self.inputs, self.input_addr_start, address, values)

    def read_inputs_bytes(self, address: int, quantity: int) -> bytes:
        """Return quantity input registers as big-endian bytes."""
        words = self.read_inputs(address, quantity)
        return struct.pack(f">{len(words)}H", *words)

    def read_inputs(self, address: int, quantity: int) -> list[int]:
        """Return quantity input registers."""
        return self._read_words(self.inputs, self.input_addr_start, address, quantity)

    def mask_write_holding(self, address: int, and_mask: int, or_mask: int) -> None:
        """Set a holding register to (value & and_mask) | (or_mask & ~and_mask)."""
        with self._lock:
            if not _in_range(address, 1, self.holding_addr_start, len(self.holding)):
                raise _illegal_address()
            idx = address - self.holding_addr_start
            value = self.holding[idx] & and_mask
            value |= or_mask & (~and_mask & 0xFFFF)
            self.holding[idx] = value & 0xFFFF
"""High-level Modbus client built on top of a transport provider."""

from __future__ import annotations

import struct
from collections.abc import Sequence

from .protocol import (
    ADDRESS_BROADCAST,
    ADDRESS_MAX,
    ADDRESS_MIN,
    READ_BITS_QUANTITY_MAX,
    READ_BITS_QUANTITY_MIN,
    READ_REG_QUANTITY_MAX,
    READ_REG_QUANTITY_MIN,
    READ_WRITE_ON_READ_REG_QUANTITY_MAX,
    READ_WRITE_ON_READ_REG_QUANTITY_MIN,
    READ_WRITE_ON_WRITE_REG_QUANTITY_MAX,
    READ_WRITE_ON_WRITE_REG_QUANTITY_MIN,
    WRITE_BITS_QUANTITY_MAX,
    WRITE_BITS_QUANTITY_MIN,
    WRITE_REG_QUANTITY_MAX,
    WRITE_REG_QUANTITY_MIN,
    ClientProvider,
    FunctionCode,
    ModbusError,
    ProtocolDataUnit,
    bytes_to_uint16,
    pdu_data_block_suffix,
    uint16_to_bytes,
)

_FIFO_COUNT_MAX = 31


def _check_quantity(quantity: int, low: int, high: int, what: str = "quantity") -> None:
    if not low <= quantity <= high:
        raise ModbusError(f"modbus: {what} '{quantity}' must be between '{low}' and '{high}'")


def _check_counted(data: bytes, expected: int, label: str) -> bytes:
    """Validate a "byte count + payload" response and return the payload."""
    if not data:
        raise ModbusError("modbus: response data is empty")
    if len(data) - 1 != data[0]:
        raise ModbusError(
            f"modbus: response {label} size '{len(data) - 1}' does not match count '{data[0]}'"
        )
    if data[0] != expected:
        raise ModbusError(
            f"modbus: response {label} size '{data[0]}' does not match quantity to bytes '{expected}'"
        )
    return data[1:]


def _check_echo(data: bytes, *fields: tuple[str, int]) -> None:
    """Validate a fixed-size response echoing 16-bit request fields."""
    size = 2 * len(fields)
    if len(data) != size:
        raise ModbusError(
            f"modbus: response data size '{len(data)}' does not match expected '{size}'"
        )
    for (name, expected), got in zip(fields, struct.unpack(f">{len(fields)}H", data)):
        if got != expected:
            raise ModbusError(f"modbus: response {name} '{got}' does not match request '{expected}'")


class Client:
    """Modbus master issuing requests through a ClientProvider."""

    def __init__(
        self,
        provider: ClientProvider,
        address_min: int = ADDRESS_MIN,
        address_max: int = ADDRESS_MAX,
    ) -> None:
        self.provider = provider
        self.address_min = address_min
        self.address_max = address_max

    # ---- connection -------------------------------------------------------

    def connect(self) -> None:
        """Connect the underlying provider."""
        self.provider.connect()

    def is_connected(self) -> bool:
        """Return whether the underlying provider is connected."""
        return self.provider.is_connected()

    def close(self) -> None:
        """Close the underlying provider."""
        self.provider.close()

    def __enter__(self) -> "Client":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ---- helpers ----------------------------------------------------------

    def _check_read_slave(self, slave_id: int) -> None:
        if not self.address_min <= slave_id <= self.address_max:
            raise ModbusError(
                f"modbus: slaveID '{slave_id}' must be between "
                f"'{self.address_min}' and '{self.address_max}'"
            )

    def _check_write_slave(self, slave_id: int) -> None:
        if not ADDRESS_BROADCAST <= slave_id <= self.address_max:
            raise ModbusError(
                f"modbus: slaveID '{slave_id}' must be between "
                f"'{ADDRESS_BROADCAST}' and '{self.address_max}'"
            )

    def _send(self, slave_id: int, func_code: int, data: bytes) -> bytes:
        response = self.provider.send(slave_id, ProtocolDataUnit(func_code, data))
        return bytes(response.data)

    # ---- bits -------------------------------------------------------------

    def _read_bits(self, func_code: int, slave_id: int, address: int, quantity: int) -> bytes:
        self._check_read_slave(slave_id)
        _check_quantity(quantity, READ_BITS_QUANTITY_MIN, READ_BITS_QUANTITY_MAX)
        data = self._send(slave_id, func_code, uint16_to_bytes(address, quantity))
        return _check_counted(data, (quantity + 7) // 8, "byte")

    def read_coils(self, slave_id: int, address: int, quantity: int) -> bytes:
        """Read 1 to 2000 coils; return their packed status."""
        return self._read_bits(FunctionCode.READ_COILS, slave_id, address, quantity)

    def read_discrete_inputs(self, slave_id: int, address: int, quantity: int) -> bytes:
        """Read 1 to 2000 discrete inputs; return their packed status."""
        return self._read_bits(FunctionCode.READ_DISCRETE_INPUTS, slave_id, address, quantity)

    def write_single_coil(self, slave_id: int, address: int, is_on: bool) -> None:
        """Switch one coil on or off."""
        self._check_write_slave(slave_id)
        value = 0xFF00 if is_on else 0x0000
        data = self._send(slave_id, FunctionCode.WRITE_SINGLE_COIL, uint16_to_bytes(address, value))
        _check_echo(data, ("address", address), ("value", value))

    def write_multiple_coils(
        self, slave_id: int, address: int, quantity: int, value: bytes
    ) -> None:
        """Force a sequence of coils from packed bits."""
        self._check_write_slave(slave_id)
        _check_quantity(quantity, WRITE_BITS_QUANTITY_MIN, WRITE_BITS_QUANTITY_MAX)
        value = bytes(value or b"")
        if len(value) * 8 < quantity:
            raise ModbusError(
                f"modbus: value bits size '{len(value) * 8}' does not greater "
                f"or equal to quantity '{quantity}'"
            )
        data = self._send(
            slave_id,
            FunctionCode.WRITE_MULTIPLE_COILS,
            pdu_data_block_suffix(value, address, quantity),
        )
        _check_echo(data, ("address", address), ("quantity", quantity))

    # ---- 16-bit registers -------------------------------------------------

    def _read_registers(self, func_code: int, slave_id: int, address: int, quantity: int) -> bytes:
        self._check_read_slave(slave_id)
        _check_quantity(quantity, READ_REG_QUANTITY_MIN, READ_REG_QUANTITY_MAX)
        data = self._send(slave_id, func_code, uint16_to_bytes(address, quantity))
        return _check_counted(data, quantity * 2, "data")

    def read_input_registers_bytes(self, slave_id: int, address: int, quantity: int) -> bytes:
        """Read 1 to 125 input registers as raw big-endian bytes."""
        return self._read_registers(FunctionCode.READ_INPUT_REGISTERS, slave_id, address, quantity)

    def read_input_registers(self, slave_id: int, address: int, quantity: int) -> list[int]:
        """Read 1 to 125 input registers."""
        return bytes_to_uint16(self.read_input_registers_bytes(slave_id, address, quantity))

    def read_holding_registers_bytes(self, slave_id: int, address: int, quantity: int) -> bytes:
        """Read 1 to 125 holding registers as raw big-endian bytes."""
        return self._read_registers(
            FunctionCode.READ_HOLDING_REGISTERS, slave_id, address, quantity
        )

    def read_holding_registers(self, slave_id: int, address: int, quantity: int) -> list[int]:
        """Read 1 to 125 holding registers."""
        return bytes_to_uint16(self.read_holding_registers_bytes(slave_id, address, quantity))

    def write_single_register(self, slave_id: int, address: int, value: int) -> None:
        """Write one holding register."""
        self._check_write_slave(slave_id)
        data = self._send(
            slave_id, FunctionCode.WRITE_SINGLE_REGISTER, uint16_to_bytes(address, value)
        )
        _check_echo(data, ("address", address), ("value", value))

    def write_multiple_registers_bytes(
        self, slave_id: int, address: int, quantity: int, value: bytes
    ) -> None:
        """Write 1 to 123 holding registers from big-endian bytes."""
        self._check_write_slave(slave_id)
        _check_quantity(quantity, WRITE_REG_QUANTITY_MIN, WRITE_REG_QUANTITY_MAX)
        value = bytes(value or b"")
        if len(value) != quantity * 2:
            raise ModbusError(
                f"modbus: value length '{len(value)}' does not twice as quantity '{quantity}'"
            )
        data = self._send(
            slave_id,
            FunctionCode.WRITE_MULTIPLE_REGISTERS,
            pdu_data_block_suffix(value, address, quantity),
        )
        _check_echo(data, ("address", address), ("quantity", quantity))

    def write_multiple_registers(
        self, slave_id: int, address: int, quantity: int, value: Sequence[int]
    ) -> None:
        """Write 1 to 123 holding registers from 16-bit values."""
        self.write_multiple_registers_bytes(slave_id, address, quantity, uint16_to_bytes(*value))

    def read_write_multiple_registers_bytes(
        self,
        slave_id: int,
        read_address: int,
        read_quantity: int,
        write_address: int,
        write_quantity: int,
        value: bytes,
    ) -> bytes:
        """Write then read holding registers in one request; return the read bytes."""
        self._check_read_slave(slave_id)
        _check_quantity(
            read_quantity,
            READ_WRITE_ON_READ_REG_QUANTITY_MIN,
            READ_WRITE_ON_READ_REG_QUANTITY_MAX,
            "quantity to read",
        )
        _check_quantity(
            write_quantity,
            READ_WRITE_ON_WRITE_REG_QUANTITY_MIN,
            READ_WRITE_ON_WRITE_REG_QUANTITY_MAX,
            "quantity to write",
        )
        value = bytes(value or b"")
        if len(value) != write_quantity * 2:
            raise ModbusError(
                f"modbus: value length '{len(value)}' does not twice as "
                f"write quantity '{write_quantity}'"
            )
        data = self._send(
            slave_id,
            FunctionCode.READ_WRITE_MULTIPLE_REGISTERS,
            pdu_data_block_suffix(value, read_address, read_quantity, write_address, write_quantity),
        )
        if not data:
            raise ModbusError("modbus: response data is empty")
        if data[0] != len(data) - 1:
            raise ModbusError(
                f"modbus: response data size '{len(data) - 1}' does not match count '{data[0]}'"
            )
        return data[1:]

    def read_write_multiple_registers(
        self,
        slave_id: int,
        read_address: int,
        read_quantity: int,
        write_address: int,
        write_quantity: int,
        value: bytes,
    ) -> list[int]:
        """Write then read holding registers in one request; return the read registers."""
        return bytes_to_uint16(
            self.read_write_multiple_registers_bytes(
                slave_id, read_address, read_quantity, write_address, write_quantity, value
            )
        )

    def mask_write_register(self, slave_id: int, address: int, and_mask: int, or_mask: int) -> None:
        """Modify a holding register with an AND mask and an OR mask."""
        self._check_write_slave(slave_id)
        data = self._send(
            slave_id,
            FunctionCode.MASK_WRITE_REGISTER,
            uint16_to_bytes(address, and_mask, or_mask),
        )
        _check_echo(data, ("address", address), ("AND-mask", and_mask), ("OR-mask", or_mask))

    def read_fifo_queue(self, slave_id: int, address: int) -> bytes:
        """Read a FIFO queue of registers; return the queued register bytes."""
        self._check_read_slave(slave_id)
        data = self._send(slave_id, FunctionCode.READ_FIFO_QUEUE, uint16_to_bytes(address))
        if len(data) < 4:
            raise ModbusError(
                f"modbus: response data size '{len(data)}' is less than expected '4'"
            )
        byte_count, fifo_count = struct.unpack_from(">HH", data)
        if len(data) - 2 != byte_count:
            raise ModbusError(
                f"modbus: response data size '{len(data) - 2}' does not match count '{byte_count}'"
            )
        if fifo_count > _FIFO_COUNT_MAX:
            raise ModbusError(
                f"modbus: fifo count '{fifo_count}' is greater than expected '{_FIFO_COUNT_MAX}'"
            )
        return data[4:]
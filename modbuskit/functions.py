"""Server-side Modbus function handlers and node bookkeeping."""

from __future__ import annotations

import struct
import threading
from collections.abc import Callable, Iterator

from .protocol import (
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
    ExceptionCode,
    ExceptionError,
    FunctionCode,
    ModbusError,
)
from .register import NodeRegister

# Minimum sizes of the PDU data field per kind of request.
FUNC_READ_MIN_SIZE = 4
FUNC_WRITE_MIN_SIZE = 4
FUNC_WRITE_MULTI_MIN_SIZE = 5
FUNC_READ_WRITE_MIN_SIZE = 9
FUNC_MASK_WRITE_MIN_SIZE = 6

# Takes the PDU data field (without function code) and returns the response data field.
FunctionHandler = Callable[[NodeRegister, bytes], bytes]


def _illegal_value() -> ExceptionError:
    return ExceptionError(ExceptionCode.ILLEGAL_DATA_VALUE)


def _read_bits(reg: NodeRegister, data: bytes, is_coil: bool) -> bytes:
    data = bytes(data)
    if len(data) != FUNC_READ_MIN_SIZE:
        raise _illegal_value()
    address, quantity = struct.unpack(">HH", data)
    if not READ_BITS_QUANTITY_MIN <= quantity <= READ_BITS_QUANTITY_MAX:
        raise _illegal_value()
    value = reg.read_coils(address, quantity) if is_coil else reg.read_discretes(address, quantity)
    return bytes([len(value) & 0xFF]) + value


def func_read_discrete_inputs(reg: NodeRegister, data: bytes) -> bytes:
    """Read discrete inputs: address(2) quantity(2) -> byte count(1) status(n)."""
    return _read_bits(reg, data, is_coil=False)


def func_read_coils(reg: NodeRegister, data: bytes) -> bytes:
    """Read coils: address(2) quantity(2) -> byte count(1) status(n)."""
    return _read_bits(reg, data, is_coil=True)


def func_write_single_coil(reg: NodeRegister, data: bytes) -> bytes:
    """Write one coil: address(2) value(2, 0xFF00 or 0x0000), echoed back."""
    data = bytes(data)
    if len(data) != FUNC_WRITE_MIN_SIZE:
        raise _illegal_value()
    address, new_value = struct.unpack(">HH", data)
    if new_value not in (0xFF00, 0x0000):
        raise _illegal_value()
    reg.write_coils(address, 1, bytes([1 if new_value == 0xFF00 else 0]))
    return data


def func_write_multi_coils(reg: NodeRegister, data: bytes) -> bytes:
    """Write coils: address(2) quantity(2) byte count(1) values(n) -> address(2) quantity(2)."""
    data = bytes(data)
    if len(data) < FUNC_WRITE_MULTI_MIN_SIZE:
        raise _illegal_value()
    address, quantity = struct.unpack_from(">HH", data)
    byte_count = data[4]
    if (
        not WRITE_BITS_QUANTITY_MIN <= quantity <= WRITE_BITS_QUANTITY_MAX
        or byte_count != ((quantity + 7) // 8) & 0xFF
    ):
        raise _illegal_value()
    reg.write_coils(address, quantity, data[5:])
    return data[:4]


def _read_registers(reg: NodeRegister, data: bytes, is_holding: bool) -> bytes:
    data = bytes(data)
    if len(data) != FUNC_READ_MIN_SIZE:
        raise _illegal_value()
    address, quantity = struct.unpack(">HH", data)
    if not READ_REG_QUANTITY_MIN <= quantity <= READ_REG_QUANTITY_MAX:
        raise _illegal_value()
    if is_holding:
        value = reg.read_holdings_bytes(address, quantity)
    else:
        value = reg.read_inputs_bytes(address, quantity)
    return bytes([(quantity * 2) & 0xFF]) + value


def func_read_input_registers(reg: NodeRegister, data: bytes) -> bytes:
    """Read input registers: address(2) quantity(2) -> byte count(1) values(2n)."""
    return _read_registers(reg, data, is_holding=False)


def func_read_holding_registers(reg: NodeRegister, data: bytes) -> bytes:
    """Read holding registers: address(2) quantity(2) -> byte count(1) values(2n)."""
    return _read_registers(reg, data, is_holding=True)


def func_write_single_register(reg: NodeRegister, data: bytes) -> bytes:
    """Write one holding register: address(2) value(2), echoed back."""
    data = bytes(data)
    if len(data) != FUNC_WRITE_MIN_SIZE:
        raise _illegal_value()
    (address,) = struct.unpack_from(">H", data)
    reg.write_holdings_bytes(address, 1, data[2:])
    return data


def func_write_multi_holding_registers(reg: NodeRegister, data: bytes) -> bytes:
    """Write holding registers: address(2) count(2) byte count(1) values -> address(2) count(2)."""
    data = bytes(data)
    if len(data) < FUNC_WRITE_MULTI_MIN_SIZE:
        raise _illegal_value()
    address, count = struct.unpack_from(">HH", data)
    byte_count = data[4]
    if not WRITE_REG_QUANTITY_MIN <= count <= WRITE_REG_QUANTITY_MAX or byte_count != count * 2:
        raise _illegal_value()
    reg.write_holdings_bytes(address, count, data[5:])
    return struct.pack(">HH", address, count)


def func_read_write_multi_holding_registers(reg: NodeRegister, data: bytes) -> bytes:
    """Write then read holding registers in one request."""
    data = bytes(data)
    if len(data) < FUNC_READ_WRITE_MIN_SIZE:
        raise _illegal_value()
    read_address, read_count, write_address, write_count = struct.unpack_from(">HHHH", data)
    write_byte_count = data[8]
    if (
        not READ_WRITE_ON_READ_REG_QUANTITY_MIN <= read_count <= READ_WRITE_ON_READ_REG_QUANTITY_MAX
        or not READ_WRITE_ON_WRITE_REG_QUANTITY_MIN
        <= write_count
        <= READ_WRITE_ON_WRITE_REG_QUANTITY_MAX
        or write_byte_count != write_count * 2
    ):
        raise _illegal_value()
    reg.write_holdings_bytes(write_address, write_count, data[9:])
    value = reg.read_holdings_bytes(read_address, read_count)
    return bytes([(read_count * 2) & 0xFF]) + value


def func_mask_write_registers(reg: NodeRegister, data: bytes) -> bytes:
    """Mask write a holding register: address(2) and-mask(2) or-mask(2), echoed back."""
    data = bytes(data)
    if len(data) != FUNC_MASK_WRITE_MIN_SIZE:
        raise _illegal_value()
    address, and_mask, or_mask = struct.unpack(">HHH", data)
    reg.mask_write_holding(address, and_mask, or_mask)
    return data


class ServerCommon:
    """Nodes and function handlers shared by server sessions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[int, NodeRegister] = {}
        self.handlers: dict[int, FunctionHandler] = {
            FunctionCode.READ_DISCRETE_INPUTS: func_read_discrete_inputs,
            FunctionCode.READ_COILS: func_read_coils,
            FunctionCode.WRITE_SINGLE_COIL: func_write_single_coil,
            FunctionCode.WRITE_MULTIPLE_COILS: func_write_multi_coils,
            FunctionCode.READ_INPUT_REGISTERS: func_read_input_registers,
            FunctionCode.READ_HOLDING_REGISTERS: func_read_holding_registers,
            FunctionCode.WRITE_SINGLE_REGISTER: func_write_single_register,
            FunctionCode.WRITE_MULTIPLE_REGISTERS: func_write_multi_holding_registers,
            FunctionCode.READ_WRITE_MULTIPLE_REGISTERS: func_read_write_multi_holding_registers,
            FunctionCode.MASK_WRITE_REGISTER: func_mask_write_registers,
        }

    def add_nodes(self, *args: NodeRegister) -> None:
        """Add nodes, replacing any with the same slave id."""
        with self._lock:
            for node in args:
                self._nodes[node.slave_id] = node

    def delete_node(self, slave_id: int) -> None:
        """Remove a node; a missing one is ignored."""
        with self._lock:
            self._nodes.pop(slave_id, None)

    def delete_all_nodes(self) -> None:
        """Remove every node."""
        with self._lock:
            self._nodes.clear()

    def get_node(self, slave_id: int) -> NodeRegister:
        """Return the node with this slave id."""
        with self._lock:
            node = self._nodes.get(slave_id)
        if node is None:
            raise ModbusError("slaveID not exist")
        return node

    def node_list(self) -> list[NodeRegister]:
        """Return all nodes."""
        with self._lock:
            return list(self._nodes.values())

    def nodes(self) -> Iterator[tuple[int, NodeRegister]]:
        """Iterate over (slave id, node) pairs of a snapshot of the nodes."""
        with self._lock:
            items = list(self._nodes.items())
        yield from items

    def register_function_handler(self, func_code: int, handler: FunctionHandler | None) -> None:
        """Install a handler for a function code; None is ignored."""
        if handler is not None:
            self.handlers[func_code] = handler
"""Protocol constants, data units and shared helpers for Modbus."""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum

# Protocol address limits.
ADDRESS_BROADCAST = 0
ADDRESS_MIN = 1
ADDRESS_MAX = 247

# Frame size limits.
PDU_MIN_SIZE = 1  # funcCode(1)
PDU_MAX_SIZE = 253  # funcCode(1) + data(252)

RTU_ADU_MIN_SIZE = 4  # address(1) + funcCode(1) + crc(2)
RTU_ADU_MAX_SIZE = 256  # address(1) + PDU(253) + crc(2)

ASCII_ADU_MIN_SIZE = 3
ASCII_ADU_MAX_SIZE = 256
ASCII_CHARACTER_MAX_SIZE = 513

TCP_PROTOCOL_IDENTIFIER = 0x0000
TCP_HEADER_MBAP_SIZE = 7  # MBAP header
TCP_ADU_MIN_SIZE = 8  # MBAP + funcCode
TCP_ADU_MAX_SIZE = 260

# Register quantity limits.
READ_BITS_QUANTITY_MIN = 1
READ_BITS_QUANTITY_MAX = 2000
WRITE_BITS_QUANTITY_MIN = 1
WRITE_BITS_QUANTITY_MAX = 1968
READ_REG_QUANTITY_MIN = 1
READ_REG_QUANTITY_MAX = 125
WRITE_REG_QUANTITY_MIN = 1
WRITE_REG_QUANTITY_MAX = 123
READ_WRITE_ON_READ_REG_QUANTITY_MIN = 1
READ_WRITE_ON_READ_REG_QUANTITY_MAX = 125
READ_WRITE_ON_WRITE_REG_QUANTITY_MIN = 1
READ_WRITE_ON_WRITE_REG_QUANTITY_MAX = 121


class FunctionCode(IntEnum):
    """Modbus function codes."""

    READ_COILS = 1
    READ_DISCRETE_INPUTS = 2
    READ_HOLDING_REGISTERS = 3
    READ_INPUT_REGISTERS = 4
    WRITE_SINGLE_COIL = 5
    WRITE_SINGLE_REGISTER = 6
    WRITE_MULTIPLE_COILS = 15
    WRITE_MULTIPLE_REGISTERS = 16
    OTHER_REPORT_SLAVE_ID = 17
    MASK_WRITE_REGISTER = 22
    READ_WRITE_MULTIPLE_REGISTERS = 23
    READ_FIFO_QUEUE = 24


class ExceptionCode(IntEnum):
    """Modbus exception codes."""

    ILLEGAL_FUNCTION = 1
    ILLEGAL_DATA_ADDRESS = 2
    ILLEGAL_DATA_VALUE = 3
    SERVER_DEVICE_FAILURE = 4
    ACKNOWLEDGE = 5
    SERVER_DEVICE_BUSY = 6
    NEGATIVE_ACKNOWLEDGE = 7
    MEMORY_PARITY_ERROR = 8
    GATEWAY_PATH_UNAVAILABLE = 10
    GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND = 11


_EXCEPTION_NAMES = {
    ExceptionCode.ILLEGAL_FUNCTION: "illegal function",
    ExceptionCode.ILLEGAL_DATA_ADDRESS: "illegal data address",
    ExceptionCode.ILLEGAL_DATA_VALUE: "illegal data value",
    ExceptionCode.SERVER_DEVICE_FAILURE: "server device failure",
    ExceptionCode.ACKNOWLEDGE: "acknowledge",
    ExceptionCode.SERVER_DEVICE_BUSY: "server device busy",
    ExceptionCode.NEGATIVE_ACKNOWLEDGE: "Negative Acknowledge",
    ExceptionCode.MEMORY_PARITY_ERROR: "memory parity error",
    ExceptionCode.GATEWAY_PATH_UNAVAILABLE: "gateway path unavailable",
    ExceptionCode.GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND: "gateway target device failed to respond",
}


class ModbusError(Exception):
    """Base class for every error raised by the package."""


class ExceptionError(ModbusError):
    """A Modbus exception response carrying an exception code."""

    def __init__(self, exception_code: int = 0) -> None:
        self.exception_code = int(exception_code) & 0xFF
        name = _EXCEPTION_NAMES.get(self.exception_code, "unknown")
        super().__init__(f"modbus: exception '{self.exception_code}' ({name})")


@dataclass(frozen=True)
class ProtocolDataUnit:
    """A function code with its data, independent of the transport."""

    func_code: int
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))


@dataclass(frozen=True)
class TCPHeader:
    """The MBAP header of a Modbus TCP frame."""

    transaction_id: int
    protocol_id: int
    length: int
    slave_id: int


class ClientProvider(ABC):
    """Transport used by a client to exchange frames with a remote device."""

    @abstractmethod
    def connect(self) -> None:
        """Connect to the remote device."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Return whether a connection is open."""

    @abstractmethod
    def log_mode(self, enable: bool) -> None:
        """Enable or disable log output."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    def send(self, slave_id: int, request: ProtocolDataUnit) -> ProtocolDataUnit:
        """Send a request and return the verified response."""

    @abstractmethod
    def send_pdu(self, slave_id: int, pdu_request: bytes) -> bytes:
        """Send a raw PDU and return the response PDU."""

    @abstractmethod
    def send_raw_frame(self, adu_request: bytes) -> bytes:
        """Send a complete frame and return the raw response frame."""

    def __enter__(self) -> "ClientProvider":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def response_error(response: ProtocolDataUnit) -> ExceptionError:
    """Build the exception error carried by an exception response."""
    return ExceptionError(response.data[0] if response.data else 0)


def uint16_to_bytes(*args: int) -> bytes:
    """Pack 16-bit values big-endian."""
    try:
        return struct.pack(f">{len(args)}H", *args)
    except struct.error as exc:
        raise ValueError(f"modbus: values must be between 0 and 65535: {args}") from exc


def bytes_to_uint16(buf: bytes) -> list[int]:
    """Unpack big-endian 16-bit registers; a trailing odd byte is ignored."""
    count = len(buf) // 2
    return list(struct.unpack_from(f">{count}H", bytes(buf)))


def pdu_data_block_suffix(suffix: bytes, *args: int) -> bytes:
    """Pack 16-bit values, then the suffix length as one byte, then the suffix."""
    suffix = bytes(suffix)
    return uint16_to_bytes(*args) + bytes([len(suffix) & 0xFF]) + suffix
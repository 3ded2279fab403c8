"""Modbus RTU framing and the RTU serial client provider."""

from __future__ import annotations

import time

import serial

from .checksum import crc16
from .log import Logger, LogProvider
from .protocol import (
    PDU_MAX_SIZE,
    PDU_MIN_SIZE,
    RTU_ADU_MAX_SIZE,
    RTU_ADU_MIN_SIZE,
    ClientProvider,
    FunctionCode,
    ModbusError,
    ProtocolDataUnit,
    response_error,
)
from .serial_port import SERIAL_DEFAULT_TIMEOUT, SerialConfig, SerialPort

RTU_EXCEPTION_SIZE = 5


def encode_rtu_frame(slave_id: int, pdu: ProtocolDataUnit) -> bytes:
    """Build an RTU frame: slave id, function code, data, CRC (little-endian)."""
    length = len(pdu.data) + 4
    if length > RTU_ADU_MAX_SIZE:
        raise ModbusError(
            f"modbus: length of data '{length}' must not be bigger than '{RTU_ADU_MAX_SIZE}'"
        )
    adu = bytes([slave_id & 0xFF, pdu.func_code & 0xFF]) + pdu.data
    return adu + crc16(adu).to_bytes(2, "little")


def decode_rtu_frame(adu: bytes) -> tuple[int, bytes]:
    """Check the CRC of an RTU frame and return its slave id and PDU."""
    adu = bytes(adu)
    if len(adu) < RTU_ADU_MIN_SIZE:
        raise ModbusError(
            f"modbus: response length '{len(adu)}' does not meet minimum '{RTU_ADU_MIN_SIZE}'"
        )
    crc = crc16(adu[:-2])
    expect = int.from_bytes(adu[-2:], "little")
    if crc != expect:
        raise ModbusError(f"modbus: response crc '{expect:x}' does not match expected '{crc:x}'")
    return adu[0], adu[1:-2]


def verify(
    req_slave_id: int,
    rsp_slave_id: int,
    req_pdu: ProtocolDataUnit,
    rsp_pdu: ProtocolDataUnit,
) -> ProtocolDataUnit:
    """Check a serial response against its request and return the response."""
    if req_slave_id != rsp_slave_id:
        raise ModbusError(
            f"modbus: response slave id '{rsp_slave_id}' does not match request '{req_slave_id}'"
        )
    if rsp_pdu.func_code != req_pdu.func_code:
        raise response_error(rsp_pdu)
    if not rsp_pdu.data:
        raise ModbusError("modbus: response data is empty")
    return rsp_pdu


def calculate_response_length(adu: bytes) -> int:
    """Return the expected length of the response to an RTU request frame."""
    length = RTU_ADU_MIN_SIZE
    func_code = adu[1]
    if func_code in (FunctionCode.READ_DISCRETE_INPUTS, FunctionCode.READ_COILS):
        count = int.from_bytes(adu[4:6], "big")
        length += 1 + (count + 7) // 8
    elif func_code in (
        FunctionCode.READ_INPUT_REGISTERS,
        FunctionCode.READ_HOLDING_REGISTERS,
        FunctionCode.READ_WRITE_MULTIPLE_REGISTERS,
    ):
        count = int.from_bytes(adu[4:6], "big")
        length += 1 + count * 2
    elif func_code in (
        FunctionCode.WRITE_SINGLE_COIL,
        FunctionCode.WRITE_MULTIPLE_COILS,
        FunctionCode.WRITE_SINGLE_REGISTER,
        FunctionCode.WRITE_MULTIPLE_REGISTERS,
    ):
        length += 4
    elif func_code == FunctionCode.MASK_WRITE_REGISTER:
        length += 6
    return length


def _check_pdu_size(pdu_request: bytes) -> None:
    if not PDU_MIN_SIZE <= len(pdu_request) <= PDU_MAX_SIZE:
        raise ModbusError(
            f"modbus: pdu size '{len(pdu_request)}' must be between "
            f"'{PDU_MIN_SIZE}' and '{PDU_MAX_SIZE}'"
        )


class RTUClientProvider(SerialPort, ClientProvider):
    """Client provider speaking Modbus RTU over a serial line."""

    def __init__(
        self,
        port_name: str = "",
        config: SerialConfig | None = None,
        timeout: float = SERIAL_DEFAULT_TIMEOUT,
        log_provider: LogProvider | None = None,
        enable_logger: bool = False,
    ) -> None:
        SerialPort.__init__(self, port_name, config, timeout)
        self.logger = Logger("modbusRTUMaster => ")
        self.logger.set_log_provider(log_provider)
        self.logger.log_mode(enable_logger)

    def log_mode(self, enable: bool) -> None:
        """Enable or disable log output."""
        self.logger.log_mode(enable)

    def send(self, slave_id: int, request: ProtocolDataUnit) -> ProtocolDataUnit:
        """Send a request and return the verified response."""
        adu_response = self.send_raw_frame(encode_rtu_frame(slave_id, request))
        rsp_slave_id, pdu = decode_rtu_frame(adu_response)
        response = ProtocolDataUnit(pdu[0], pdu[1:])
        return verify(slave_id, rsp_slave_id, request, response)

    def send_pdu(self, slave_id: int, pdu_request: bytes) -> bytes:
        """Send a raw PDU and return the response PDU (function code and data)."""
        pdu_request = bytes(pdu_request)
        _check_pdu_size(pdu_request)
        request = ProtocolDataUnit(pdu_request[0], pdu_request[1:])
        adu_response = self.send_raw_frame(encode_rtu_frame(slave_id, request))
        rsp_slave_id, pdu = decode_rtu_frame(adu_response)
        verify(slave_id, rsp_slave_id, request, ProtocolDataUnit(pdu[0], pdu[1:]))
        return pdu

    def send_raw_frame(self, adu_request: bytes) -> bytes:
        """Write an RTU frame and read back the response frame."""
        adu_request = bytes(adu_request)
        if len(adu_request) < RTU_ADU_MIN_SIZE:
            raise ModbusError(
                f"modbus: request length '{len(adu_request)}' does not meet "
                f"minimum '{RTU_ADU_MIN_SIZE}'"
            )
        with self._lock:
            port = self._open()
            self.logger.debugf("sending [%s]", adu_request.hex(" "))
            try:
                port.write(adu_request)
            except (serial.SerialException, OSError) as exc:
                self._close()
                raise ModbusError(f"modbus: write failed: {exc}") from exc

            function = adu_request[1]
            function_fail = function | 0x80
            bytes_to_read = calculate_response_length(adu_request)
            time.sleep(self.calculate_delay(len(adu_request) + bytes_to_read))

            data = self._read_at_least(port, RTU_ADU_MIN_SIZE, RTU_ADU_MAX_SIZE)
            if data[1] == function:
                if RTU_ADU_MIN_SIZE < bytes_to_read <= RTU_ADU_MAX_SIZE and len(data) < bytes_to_read:
                    data += self._read_exact(port, bytes_to_read - len(data))
            elif data[1] == function_fail:
                if len(data) < RTU_EXCEPTION_SIZE:
                    data += self._read_exact(port, RTU_EXCEPTION_SIZE - len(data))
            else:
                raise ModbusError(f"modbus: unknown function code {data[1]:02x}")
            self.logger.debugf("received [%s]", data.hex(" "))
            return data

    def calculate_delay(self, chars: int) -> float:
        """Roughly the time, in seconds, needed to transfer chars characters plus a frame gap."""
        baud = self.config.baud_rate
        if baud <= 0 or baud > 19200:
            character_delay, frame_delay = 750, 1750
        else:
            character_delay, frame_delay = 15_000_000 // baud, 35_000_000 // baud
        return (character_delay * chars + frame_delay) / 1_000_000
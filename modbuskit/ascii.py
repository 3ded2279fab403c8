"""Modbus ASCII framing and the ASCII serial client provider."""

from __future__ import annotations

import binascii

import serial

from .checksum import LRC
from .log import Logger, LogProvider
from .protocol import (
    ASCII_ADU_MAX_SIZE,
    ASCII_ADU_MIN_SIZE,
    ASCII_CHARACTER_MAX_SIZE,
    PDU_MAX_SIZE,
    PDU_MIN_SIZE,
    ClientProvider,
    ModbusError,
    ProtocolDataUnit,
)
from .rtu import verify
from .serial_port import SERIAL_DEFAULT_TIMEOUT, SerialConfig, SerialPort

ASCII_START = b":"
ASCII_END = b"\r\n"


def encode_ascii_frame(slave_id: int, pdu: ProtocolDataUnit) -> bytes:
    """Build an ASCII frame: ':' + hex(slave id, function, data, LRC) + CRLF."""
    length = len(pdu.data) + 3
    if length > ASCII_ADU_MAX_SIZE:
        raise ModbusError(
            f"modbus: length of data '{length}' must not be bigger than '{ASCII_ADU_MAX_SIZE}'"
        )
    body = bytes([slave_id & 0xFF, pdu.func_code & 0xFF]) + pdu.data
    lrc = LRC().push(*body).value()
    return ASCII_START + (body + bytes([lrc])).hex().upper().encode("ascii") + ASCII_END


def decode_ascii_frame(adu: bytes) -> tuple[int, bytes]:
    """Check an ASCII frame and its LRC; return its slave id and PDU."""
    adu = bytes(adu)
    minimum = ASCII_ADU_MIN_SIZE + 6
    if len(adu) < minimum:
        raise ModbusError(
            f"modbus: response length '{len(adu)}' does not meet minimum '{minimum}'"
        )
    if len(adu) % 2 != 1:
        raise ModbusError(f"modbus: response length '{len(adu) - 1}' is not an even number")
    if not adu.startswith(ASCII_START):
        raise ModbusError(
            f"modbus: response frame '{adu[:1].hex()}'... is not started with "
            f"'{ASCII_START.hex()}'"
        )
    if not adu.endswith(ASCII_END):
        raise ModbusError(
            f"modbus: response frame ...'{adu[-2:].hex()}' is not ended with '{ASCII_END.hex()}'"
        )
    try:
        buf = binascii.unhexlify(adu[1:-2])
    except (binascii.Error, ValueError) as exc:
        raise ModbusError(f"modbus: response frame is not valid hex: {exc}") from exc
    lrc = LRC().push(*buf[:-1]).value()
    if buf[-1] != lrc:
        raise ModbusError(f"modbus: response lrc '{buf[-1]:x}' does not match expected '{lrc:x}'")
    return buf[0], buf[1:-1]


class ASCIIClientProvider(SerialPort, ClientProvider):
    """Client provider speaking Modbus ASCII over a serial line."""

    def __init__(
        self,
        port_name: str = "",
        config: SerialConfig | None = None,
        timeout: float = SERIAL_DEFAULT_TIMEOUT,
        log_provider: LogProvider | None = None,
        enable_logger: bool = False,
    ) -> None:
        SerialPort.__init__(self, port_name, config, timeout)
        self.logger = Logger("modbusASCIIMaster => ")
        self.logger.set_log_provider(log_provider)
        self.logger.log_mode(enable_logger)

    def log_mode(self, enable: bool) -> None:
        """Enable or disable log output."""
        self.logger.log_mode(enable)

    def send(self, slave_id: int, request: ProtocolDataUnit) -> ProtocolDataUnit:
        """Send a request and return the verified response."""
        adu_response = self.send_raw_frame(encode_ascii_frame(slave_id, request))
        rsp_slave_id, pdu = decode_ascii_frame(adu_response)
        response = ProtocolDataUnit(pdu[0], pdu[1:])
        return verify(slave_id, rsp_slave_id, request, response)

    def send_pdu(self, slave_id: int, pdu_request: bytes) -> bytes:
        """Send a raw PDU and return the response PDU (function code and data)."""
        pdu_request = bytes(pdu_request)
        if not PDU_MIN_SIZE <= len(pdu_request) <= PDU_MAX_SIZE:
            raise ModbusError(
                f"modbus: pdu size '{len(pdu_request)}' must be between "
                f"'{PDU_MIN_SIZE}' and '{PDU_MAX_SIZE}'"
            )
        request = ProtocolDataUnit(pdu_request[0], pdu_request[1:])
        adu_response = self.send_raw_frame(encode_ascii_frame(slave_id, request))
        rsp_slave_id, pdu = decode_ascii_frame(adu_response)
        verify(slave_id, rsp_slave_id, request, ProtocolDataUnit(pdu[0], pdu[1:]))
        return pdu

    def send_raw_frame(self, adu_request: bytes) -> bytes:
        """Write an ASCII frame and read characters until CRLF, the size limit or a timeout."""
        adu_request = bytes(adu_request)
        with self._lock:
            port = self._open()
            self.logger.debugf("sending [%s]", adu_request.hex(" "))
            try:
                port.write(adu_request)
            except (serial.SerialException, OSError) as exc:
                self._close()
                raise ModbusError(f"modbus: write failed: {exc}") from exc
            try:
                data = bytes(port.read_until(expected=ASCII_END, size=ASCII_CHARACTER_MAX_SIZE))
            except (serial.SerialException, OSError) as exc:
                raise ModbusError(f"modbus: read failed: {exc}") from exc
            self.logger.debugf("received [%s]", data.hex(" "))
            return data
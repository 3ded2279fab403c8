"""Modbus TCP framing and the TCP client provider."""

from __future__ import annotations

import socket
import struct
import threading

from .log import Logger, LogProvider
from .protocol import (
    PDU_MAX_SIZE,
    PDU_MIN_SIZE,
    TCP_ADU_MAX_SIZE,
    TCP_HEADER_MBAP_SIZE,
    TCP_PROTOCOL_IDENTIFIER,
    ClientProvider,
    ModbusError,
    ProtocolDataUnit,
    TCPHeader,
    response_error,
)

TCP_DEFAULT_TIMEOUT = 1.0
TCP_DEFAULT_AUTO_RECONNECT = 1

_TCP_ADU_MIN_SIZE = TCP_HEADER_MBAP_SIZE + 1  # MBAP header + function code
_MAX_LENGTH_FIELD = TCP_ADU_MAX_SIZE - (TCP_HEADER_MBAP_SIZE - 1)


def encode_tcp_frame(tid: int, slave_id: int, pdu: ProtocolDataUnit) -> tuple[TCPHeader, bytes]:
    """Build a TCP frame (MBAP header + PDU); return its header and bytes."""
    data = bytes(pdu.data)
    length = TCP_HEADER_MBAP_SIZE + 1 + len(data)
    if length > TCP_ADU_MAX_SIZE:
        raise ModbusError(
            f"modbus: length of data '{length}' must not be bigger than '{TCP_ADU_MAX_SIZE}'"
        )
    head = TCPHeader(tid & 0xFFFF, TCP_PROTOCOL_IDENTIFIER, 2 + len(data), slave_id & 0xFF)
    adu = (
        struct.pack(
            ">HHHBB",
            tid & 0xFFFF,
            TCP_PROTOCOL_IDENTIFIER,
            2 + len(data),
            slave_id & 0xFF,
            pdu.func_code & 0xFF,
        )
        + data
    )
    return head, adu


def decode_tcp_frame(adu: bytes) -> tuple[TCPHeader, bytes]:
    """Split a TCP frame into its MBAP header and PDU."""
    adu = bytes(adu)
    if len(adu) < _TCP_ADU_MIN_SIZE:
        raise ModbusError(
            f"modbus: response length '{len(adu)}' does not meet minimum '{_TCP_ADU_MIN_SIZE}'"
        )
    tid, pid, length, slave_id = struct.unpack_from(">HHHB", adu)
    head = TCPHeader(tid, pid, length, slave_id)
    pdu_length = len(adu) - TCP_HEADER_MBAP_SIZE
    if pdu_length != length - 1:
        raise ModbusError(
            f"modbus: length in response '{length - 1}' does not match "
            f"pdu data length '{pdu_length}'"
        )
    return head, adu[TCP_HEADER_MBAP_SIZE:]


def verify_tcp_frame(
    req_head: TCPHeader,
    rsp_head: TCPHeader,
    req_pdu: ProtocolDataUnit,
    rsp_pdu: ProtocolDataUnit,
) -> ProtocolDataUnit:
    """Check a TCP response against its request and return the response PDU."""
    if rsp_head.transaction_id != req_head.transaction_id:
        raise ModbusError(
            f"modbus: response transaction id '{rsp_head.transaction_id}' "
            f"does not match request '{req_head.transaction_id}'"
        )
    if rsp_head.protocol_id != req_head.protocol_id:
        raise ModbusError(
            f"modbus: response protocol id '{rsp_head.protocol_id}' "
            f"does not match request '{req_head.protocol_id}'"
        )
    if rsp_head.slave_id != req_head.slave_id:
        raise ModbusError(
            f"modbus: response unit id '{rsp_head.slave_id}' "
            f"does not match request '{req_head.slave_id}'"
        )
    if rsp_pdu.func_code != req_pdu.func_code:
        raise response_error(rsp_pdu)
    if not rsp_pdu.data:
        raise ModbusError("modbus: response data is empty")
    return rsp_pdu


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ModbusError(f"modbus: address '{address}' is missing a port")
    return host.strip("[]") or "localhost", int(port)


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = conn.recv(size - len(buf))
        if not chunk:
            raise ConnectionError("connection closed by peer")
        buf += chunk
    return bytes(buf)


class TCPClientProvider(ClientProvider):
    """Client provider speaking Modbus TCP to one remote address."""

    def __init__(
        self,
        address: str,
        timeout: float = TCP_DEFAULT_TIMEOUT,
        log_provider: LogProvider | None = None,
        enable_logger: bool = False,
    ) -> None:
        self.address = address
        self.timeout = timeout
        self.logger = Logger("modbusTCPMaster =>")
        self.logger.set_log_provider(log_provider)
        self.logger.log_mode(enable_logger)
        self._lock = threading.Lock()
        self._conn: socket.socket | None = None
        self._tid_lock = threading.Lock()
        self._transaction_id = 0

    # ---- settings ---------------------------------------------------------

    def log_mode(self, enable: bool) -> None:
        """Enable or disable log output."""
        self.logger.log_mode(enable)

    def set_log_provider(self, provider: LogProvider | None) -> None:
        """Replace the log provider."""
        self.logger.set_log_provider(provider)

    def set_serial_config(self, port_name: str, config: object) -> None:
        """Serial settings do not apply to TCP."""

    def set_timeout(self, timeout: float) -> None:
        """Set the connect and read timeout, in seconds."""
        self.timeout = timeout

    def _io_timeout(self) -> float | None:
        return self.timeout if self.timeout and self.timeout > 0 else None

    def _next_tid(self) -> int:
        with self._tid_lock:
            self._transaction_id = (self._transaction_id + 1) & 0xFFFFFFFF
            return self._transaction_id & 0xFFFF

    # ---- connection -------------------------------------------------------

    def _connect(self) -> socket.socket:
        """Open the connection if needed; the caller holds the lock."""
        if self._conn is None:
            host, port = _split_address(self.address)
            self._conn = socket.create_connection((host, port), timeout=self._io_timeout())
        return self._conn

    def _close(self) -> None:
        """Close the connection if open; the caller holds the lock."""
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    def connect(self) -> None:
        """Connect to the remote address."""
        with self._lock:
            self._connect()

    def is_connected(self) -> bool:
        """Return whether a connection is open."""
        with self._lock:
            return self._conn is not None

    def close(self) -> None:
        """Close the connection; closing a closed provider does nothing."""
        with self._lock:
            self._close()

    def __enter__(self) -> "TCPClientProvider":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ---- requests ---------------------------------------------------------

    def send(self, slave_id: int, request: ProtocolDataUnit) -> ProtocolDataUnit:
        """Send a request and return the verified response."""
        head, adu_request = encode_tcp_frame(self._next_tid(), slave_id, request)
        rsp_head, pdu = decode_tcp_frame(self.send_raw_frame(adu_request))
        response = ProtocolDataUnit(pdu[0], pdu[1:])
        return verify_tcp_frame(head, rsp_head, request, response)

    def send_pdu(self, slave_id: int, pdu_request: bytes) -> bytes:
        """Send a raw PDU and return the response PDU (function code and data)."""
        pdu_request = bytes(pdu_request)
        if not PDU_MIN_SIZE <= len(pdu_request) <= PDU_MAX_SIZE:
            raise ModbusError(
                f"modbus: pdu size '{len(pdu_request)}' must be between "
                f"'{PDU_MIN_SIZE}' and '{PDU_MAX_SIZE}'"
            )
        request = ProtocolDataUnit(pdu_request[0], pdu_request[1:])
        head, adu_request = encode_tcp_frame(self._next_tid(), slave_id, request)
        rsp_head, rsp_pdu = decode_tcp_frame(self.send_raw_frame(adu_request))
        verify_tcp_frame(head, rsp_head, request, ProtocolDataUnit(rsp_pdu[0], rsp_pdu[1:]))
        return rsp_pdu

    def _flush(self, conn: socket.socket) -> None:
        """Discard whatever is already waiting on the connection."""
        try:
            conn.setblocking(False)
            conn.recv(TCP_ADU_MAX_SIZE)
        except OSError:
            pass
        finally:
            try:
                conn.settimeout(self._io_timeout())
            except OSError:
                pass

    def _read(self, conn: socket.socket, size: int) -> bytes:
        try:
            conn.settimeout(self._io_timeout())
            return _recv_exact(conn, size)
        except socket.timeout as exc:
            raise ModbusError("modbus: response timeout") from exc
        except OSError as exc:
            self._close()
            raise ModbusError(f"modbus: read failed: {exc}") from exc

    def send_raw_frame(self, adu_request: bytes) -> bytes:
        """Write a TCP frame and read back the response frame."""
        adu_request = bytes(adu_request)
        with self._lock:
            conn = self._connect()
            self.logger.debugf("sending [%s]", adu_request.hex(" "))
            try:
                conn.settimeout(self._io_timeout())
                conn.sendall(adu_request)
            except socket.timeout as exc:
                raise ModbusError("modbus: write timeout") from exc
            except OSError as exc:
                self._close()
                raise ModbusError(f"modbus: write failed: {exc}") from exc

            header = self._read(conn, TCP_HEADER_MBAP_SIZE)
            length = int.from_bytes(header[4:6], "big")
            if length <= 0:
                self._flush(conn)
                raise ModbusError(
                    f"modbus: length in response header '{length}' must not be zero"
                )
            if length > _MAX_LENGTH_FIELD:
                self._flush(conn)
                raise ModbusError(
                    f"modbus: length in response header '{length}' must not greater "
                    f"than '{_MAX_LENGTH_FIELD}'"
                )
            body = self._read(conn, length - 1)
            adu_response = header + body
            self.logger.debugf("received [%s]", adu_response.hex(" "))
            return adu_response
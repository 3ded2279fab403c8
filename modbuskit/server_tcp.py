"""Modbus TCP server and its per-connection sessions."""

from __future__ import annotations

import errno
import socket
import struct
import threading
import time

from .functions import ServerCommon
from .log import Logger
from .protocol import (
    TCP_ADU_MAX_SIZE,
    TCP_HEADER_MBAP_SIZE,
    TCP_PROTOCOL_IDENTIFIER,
    ExceptionCode,
    ExceptionError,
    ModbusError,
)

TCP_DEFAULT_READ_TIMEOUT = 60.0
TCP_DEFAULT_WRITE_TIMEOUT = 1.0

_MIN_TEMP_DELAY = 0.005
_MAX_TEMP_DELAY = 1.0
_ACCEPT_POLL = 0.2
_TEMPORARY_ERRNOS = frozenset(
    code
    for code in (
        getattr(errno, "EMFILE", None),
        getattr(errno, "ENFILE", None),
        getattr(errno, "ENOBUFS", None),
        getattr(errno, "ENOMEM", None),
        getattr(errno, "ECONNABORTED", None),
        getattr(errno, "EINTR", None),
    )
    if code is not None
)


def _hex(data: bytes) -> str:
    return data.hex(" ")


def _timeout(value: float | None) -> float | None:
    return value if value is not None and value > 0 else None


def _peer(conn: socket.socket) -> str:
    try:
        return f"{conn.getpeername()}"
    except OSError:
        return "?"


def _local(conn: socket.socket) -> str:
    try:
        return f"{conn.getsockname()}"
    except OSError:
        return "?"


class ServerSession:
    """Serves Modbus TCP requests arriving on one connection."""

    def __init__(
        self,
        conn: socket.socket,
        read_timeout: float = TCP_DEFAULT_READ_TIMEOUT,
        write_timeout: float = TCP_DEFAULT_WRITE_TIMEOUT,
        common: ServerCommon | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.conn = conn
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.common = common if common is not None else ServerCommon()
        self.logger = logger if logger is not None else Logger("modbusTCPServer => ")

    def _build_response(self, request_adu: bytes) -> bytes | None:
        tid, pid, _length, slave_id = struct.unpack_from(">HHHB", request_adu)
        func_code = request_adu[TCP_HEADER_MBAP_SIZE]
        pdu_data = request_adu[TCP_HEADER_MBAP_SIZE + 1 :]

        try:
            node = self.common.get_node(slave_id)
        except ModbusError:
            return None  # unknown slave: stay silent

        handler = self.common.handlers.get(func_code)
        try:
            if handler is None:
                raise ExceptionError(ExceptionCode.ILLEGAL_FUNCTION)
            rsp_data = bytes(handler(node, pdu_data))
        except ExceptionError as exc:
            func_code |= 0x80
            rsp_data = bytes([exc.exception_code])

        header = struct.pack(">HHHBB", tid, pid, 2 + len(rsp_data), slave_id, func_code)
        return header + rsp_data

    def handle_frame(self, request_adu: bytes) -> bytes | None:
        """Answer one request frame; return the response sent, or None if none was."""
        request_adu = bytes(request_adu)
        self.logger.debugf("RX Raw[%s]", _hex(request_adu))
        try:
            response = self._build_response(request_adu)
        except Exception as exc:  # a malformed frame or faulty handler must not end the session
            self.logger.errorf("panic happen,%s", exc)
            return None
        if response is None:
            return None
        self.logger.debugf("TX Raw[%s]", _hex(response))
        self.conn.settimeout(_timeout(self.write_timeout))
        self.conn.sendall(response)
        return response

    def _read_exact(self, size: int) -> bytes:
        chunks = bytearray()
        while len(chunks) < size:
            self.conn.settimeout(_timeout(self.read_timeout))
            chunk = self.conn.recv(size - len(chunks))
            if not chunk:
                raise ConnectionError("remote client closed")
            chunks += chunk
        return bytes(chunks)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Serve requests until the peer leaves, an error occurs or stop_event is set."""
        cause: object = None
        self.logger.debugf(
            "client(%s) -> server(%s) connected", _peer(self.conn), _local(self.conn)
        )
        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    cause = "server active close"
                    return
                header = self._read_exact(TCP_HEADER_MBAP_SIZE)
                _tid, pid, length_field = struct.unpack_from(">HHH", header)
                if pid != TCP_PROTOCOL_IDENTIFIER:
                    continue
                length = length_field + TCP_HEADER_MBAP_SIZE - 1
                if length < TCP_HEADER_MBAP_SIZE:
                    continue
                if length > TCP_ADU_MAX_SIZE:
                    cause = f"frame length '{length}' exceeds '{TCP_ADU_MAX_SIZE}'"
                    return
                body = self._read_exact(length - TCP_HEADER_MBAP_SIZE)
                self.handle_frame(header + body)
        except OSError as exc:
            cause = exc
        finally:
            peer, local = _peer(self.conn), _local(self.conn)
            try:
                self.conn.close()
            except OSError:
                pass
            self.logger.debugf(
                "client(%s) -> server(%s) disconnected,cause by %s", peer, local, cause
            )


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"modbus: address '{address}' is missing a port")
    return host.strip("[]"), int(port)


class TCPServer(ServerCommon):
    """Modbus TCP server answering for the nodes it holds."""

    def __init__(
        self,
        read_timeout: float = TCP_DEFAULT_READ_TIMEOUT,
        write_timeout: float = TCP_DEFAULT_WRITE_TIMEOUT,
    ) -> None:
        super().__init__()
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.logger = Logger("modbusTCPServer => ")
        self.server_address: tuple | None = None
        self.started = threading.Event()
        self._server_lock = threading.Lock()
        self._listener: socket.socket | None = None
        self._stop = threading.Event()
        self._sessions: dict[threading.Thread, socket.socket] = {}

    def listen_and_serve(self, address: str) -> None:
        """Listen on "host:port" and serve until close() is called."""
        host, port = _split_address(address)
        listener = socket.create_server((host, port))
        listener.settimeout(_ACCEPT_POLL)
        stop = threading.Event()
        with self._server_lock:
            self._listener = listener
            self._stop = stop
        self.server_address = listener.getsockname()[:2]
        self.started.set()
        self.logger.debugf("server started,and listen address: %s", address)

        delay = _MIN_TEMP_DELAY
        try:
            while not stop.is_set():
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if stop.is_set():
                        return
                    if exc.errno in _TEMPORARY_ERRNOS:
                        delay = min(delay * 2, _MAX_TEMP_DELAY)
                        time.sleep(delay)
                        continue
                    raise
                delay = _MIN_TEMP_DELAY
                self._start_session(conn, stop)
        finally:
            self.close()
            self.logger.debugf("server stopped")

    def _start_session(self, conn: socket.socket, stop: threading.Event) -> None:
        session = ServerSession(conn, self.read_timeout, self.write_timeout, self, self.logger)
        thread = threading.Thread(target=self._serve_session, args=(session, stop), daemon=True)
        with self._server_lock:
            self._sessions[thread] = conn
        thread.start()

    def _serve_session(self, session: ServerSession, stop: threading.Event) -> None:
        try:
            session.run(stop)
        finally:
            with self._server_lock:
                self._sessions.pop(threading.current_thread(), None)

    def close(self) -> None:
        """Stop listening, end every session and wait for them to finish."""
        with self._server_lock:
            listener, self._listener = self._listener, None
            if listener is not None:
                self._stop.set()
                listener.close()
                for conn in self._sessions.values():
                    try:
                        conn.shutdown(socket.SHUT_RDWR)
                    except OSError:
                        pass
            threads = list(self._sessions)
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()
"""A Modbus TCP server that dials out to a remote peer and serves requests on that link."""

from __future__ import annotations

import enum
import random
import socket
import ssl
import threading
from collections.abc import Callable
from urllib.parse import SplitResult, urlsplit

from .functions import ServerCommon
from .log import Logger
from .protocol import ModbusError
from .server_tcp import TCP_DEFAULT_READ_TIMEOUT, TCP_DEFAULT_WRITE_TIMEOUT, ServerSession

DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_RECONNECT_INTERVAL = 60.0
DEFAULT_KEEP_ALIVE_INTERVAL = 30.0

_TLS_SCHEMES = ("ssl", "tls", "tcps")


class ConnectStatus(enum.IntEnum):
    """Lifecycle state of a TCPServerSpecial."""

    INITIAL = 0
    DISCONNECTED = 1
    CONNECTED = 2


def open_connection(
    uri: SplitResult | str,
    tls_context: ssl.SSLContext | None = None,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> socket.socket:
    """Open a plain or TLS connection to the host and port of uri."""
    if isinstance(uri, str):
        uri = urlsplit(uri)
    if uri.scheme != "tcp" and uri.scheme not in _TLS_SCHEMES:
        raise ModbusError("unknown protocol")
    host, port = uri.hostname, uri.port
    if not host or port is None:
        raise ModbusError(f"modbus: address '{uri.netloc}' is missing a host or port")
    sock = socket.create_connection(
        (host, port), timeout=timeout if timeout and timeout > 0 else None
    )
    if uri.scheme == "tcp":
        return sock
    context = tls_context if tls_context is not None else ssl.create_default_context()
    try:
        return context.wrap_socket(sock, server_hostname=host)
    except BaseException:
        sock.close()
        raise


def _noop(_server: "TCPServerSpecial") -> None:
    return None


class TCPServerSpecial(ServerCommon):
    """Connects to a remote peer and answers the Modbus requests it sends."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        auto_reconnect: bool = True,
        tls_context: ssl.SSLContext | None = None,
        read_timeout: float = TCP_DEFAULT_READ_TIMEOUT,
        write_timeout: float = TCP_DEFAULT_WRITE_TIMEOUT,
        on_connect: Callable[["TCPServerSpecial"], None] | None = None,
        on_connection_lost: Callable[["TCPServerSpecial"], None] | None = None,
        keep_alive: bool = False,
        keep_alive_interval: float = DEFAULT_KEEP_ALIVE_INTERVAL,
        on_keep_alive: Callable[["TCPServerSpecial"], None] | None = None,
    ) -> None:
        super().__init__()
        self.connect_timeout = connect_timeout
        self.reconnect_interval = reconnect_interval
        self.auto_reconnect = auto_reconnect
        self.tls_context = tls_context
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.on_connect = on_connect if on_connect is not None else _noop
        self.on_connection_lost = on_connection_lost if on_connection_lost is not None else _noop
        self.keep_alive = keep_alive
        self.keep_alive_interval = (
            keep_alive_interval
            if keep_alive_interval and keep_alive_interval > 0
            else DEFAULT_KEEP_ALIVE_INTERVAL
        )
        self.on_keep_alive = on_keep_alive if on_keep_alive is not None else _noop
        self.logger = Logger("modbusTCPServerSpec => ")
        self.server: SplitResult | None = None
        self._state_lock = threading.Lock()
        self._status = ConnectStatus.INITIAL
        self._stop: threading.Event | None = None
        self._conn: socket.socket | None = None

    def underlying_conn(self) -> socket.socket | None:
        """Return the current (or last) connection to the remote peer."""
        return self._conn

    def add_remote_server(self, server: str) -> None:
        """Set the peer as scheme://host:port; scheme defaults to tcp, host to 127.0.0.1."""
        if server.startswith(":"):
            server = "127.0.0.1" + server
        if "://" not in server:
            server = "tcp://" + server
        remote = urlsplit(server)
        remote.port  # raises ValueError on a malformed port
        self.server = remote

    def start(self) -> None:
        """Start connecting and serving in the background."""
        if self.server is None:
            raise ModbusError("empty remote server address,add it first")
        threading.Thread(target=self._run, daemon=True).start()

    def _set_status(self, status: ConnectStatus) -> None:
        with self._state_lock:
            self._status = status

    def _status_now(self) -> ConnectStatus:
        with self._state_lock:
            return self._status

    def is_connected(self) -> bool:
        """Return whether the link to the peer is up."""
        return self._status_now() == ConnectStatus.CONNECTED

    def is_closed(self) -> bool:
        """Return whether the server is stopped."""
        return self._status_now() == ConnectStatus.INITIAL

    def close(self) -> None:
        """Ask the background loop to stop and drop the current link."""
        with self._state_lock:
            stop, conn = self._stop, self._conn
        if stop is None:
            return
        stop.set()
        if conn is not None:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def _keep_alive_loop(self, stop: threading.Event, link_done: threading.Event) -> None:
        while not link_done.wait(self.keep_alive_interval):
            if stop.is_set():
                return
            try:
                self.on_keep_alive(self)
            except Exception as exc:
                self.logger.errorf("keep alive failed, %s", exc)

    def _run(self) -> None:
        with self._state_lock:
            if self._status != ConnectStatus.INITIAL:
                return
            self._status = ConnectStatus.DISCONNECTED
            stop = threading.Event()
            self._stop = stop
        self.logger.debugf("tcp server special start!")
        try:
            while not stop.is_set():
                self.logger.debugf("connecting server %s", self.server.geturl())
                try:
                    conn = open_connection(self.server, self.tls_context, self.connect_timeout)
                except (OSError, ModbusError, ValueError) as exc:
                    self.logger.errorf("connect failed, %s", exc)
                    if not self.auto_reconnect:
                        return
                    stop.wait(self.reconnect_interval)
                    continue
                self.logger.debugf("connect success")
                self._conn = conn
                try:
                    self.on_connect(self)
                except Exception as exc:
                    self.logger.errorf("on connect failed, %s", exc)
                    conn.close()
                    stop.wait(self.reconnect_interval)
                    continue

                link_done = threading.Event()
                if self.keep_alive:
                    threading.Thread(
                        target=self._keep_alive_loop, args=(stop, link_done), daemon=True
                    ).start()
                self._set_status(ConnectStatus.CONNECTED)
                session = ServerSession(
                    conn, self.read_timeout, self.write_timeout, self, self.logger
                )
                session.run(stop)
                self._set_status(ConnectStatus.DISCONNECTED)
                try:
                    self.on_connection_lost(self)
                finally:
                    link_done.set()
                if stop.is_set():
                    return
                # a random pause avoids flooding the peer with short-lived connections
                stop.wait(random.uniform(0.5, 1.0))
        finally:
            self._set_status(ConnectStatus.INITIAL)
            self.logger.debugf("tcp server special stop!")
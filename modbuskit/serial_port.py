"""Serial line configuration and a lockable, lazily opened serial port."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import serial

from .protocol import ModbusError

SERIAL_DEFAULT_TIMEOUT = 1.0


@dataclass
class SerialConfig:
    """Line settings of a serial port: 19200 baud, 8 data bits, no parity, 1 stop bit."""

    baud_rate: int = 19200
    data_bits: int = serial.EIGHTBITS
    parity: str = serial.PARITY_NONE
    stop_bits: float = serial.STOPBITS_ONE


class SerialPort:
    """A serial port opened on first use and shared under a lock."""

    def __init__(
        self,
        port_name: str = "",
        config: SerialConfig | None = None,
        timeout: float = SERIAL_DEFAULT_TIMEOUT,
    ) -> None:
        self.port_name = port_name
        self.config = config if config is not None else SerialConfig()
        self.timeout = timeout
        self._lock = threading.Lock()
        self._port: Any = None

    def _open(self) -> Any:
        """Open the port if needed and return it; the caller holds the lock."""
        if self._port is None:
            if not self.port_name:
                raise ModbusError("serial port name is empty")
            try:
                self._port = serial.Serial(
                    port=self.port_name,
                    baudrate=self.config.baud_rate,
                    bytesize=self.config.data_bits,
                    parity=self.config.parity,
                    stopbits=self.config.stop_bits,
                    timeout=self.timeout if self.timeout and self.timeout > 0 else None,
                )
            except (serial.SerialException, ValueError) as exc:
                raise ModbusError(
                    f"failed to open serial port: {self.port_name} err {exc}"
                ) from exc
        return self._port

    def _close(self) -> None:
        """Close the port if open; the caller holds the lock."""
        port, self._port = self._port, None
        if port is not None:
            port.close()

    @staticmethod
    def _read_exact(port: Any, size: int) -> bytes:
        try:
            data = bytes(port.read(size))
        except (serial.SerialException, OSError) as exc:
            raise ModbusError(f"modbus: read failed: {exc}") from exc
        if len(data) < size:
            raise ModbusError(
                f"modbus: response timeout, read '{len(data)}' of '{size}' bytes"
            )
        return data

    @classmethod
    def _read_at_least(cls, port: Any, size: int, limit: int) -> bytes:
        """Read at least size bytes, plus whatever else is already waiting, up to limit."""
        data = cls._read_exact(port, size)
        try:
            waiting = min(int(getattr(port, "in_waiting", 0) or 0), limit - len(data))
            if waiting > 0:
                data += bytes(port.read(waiting))
        except (serial.SerialException, OSError) as exc:
            raise ModbusError(f"modbus: read failed: {exc}") from exc
        return data

    def connect(self) -> None:
        """Open the serial port."""
        if not self.port_name:
            raise ModbusError("serial port name is empty")
        with self._lock:
            self._open()

    def is_connected(self) -> bool:
        """Return whether the port is open."""
        with self._lock:
            return self._port is not None

    def close(self) -> None:
        """Close the port; closing a closed port does nothing."""
        with self._lock:
            self._close()

    def set_serial_config(self, port_name: str, config: SerialConfig) -> None:
        """Set the port name and line settings used on the next open."""
        self.config = config
        self.port_name = port_name

    def set_timeout(self, timeout: float) -> None:
        """Set the read timeout, in seconds, used on the next open."""
        self.timeout = timeout

    def __enter__(self) -> "SerialPort":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
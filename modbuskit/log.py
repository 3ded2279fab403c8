"""Switchable logging with a pluggable provider."""

from __future__ import annotations

import sys
import threading
import time
from typing import Any, Protocol, TextIO, runtime_checkable


@runtime_checkable
class LogProvider(Protocol):
    """Receiver of error and debug messages."""

    def errorf(self, fmt: str, *args: Any) -> None: ...

    def debugf(self, fmt: str, *args: Any) -> None: ...


def _format(fmt: str, args: tuple[Any, ...]) -> str:
    return fmt % args if args else fmt


class DefaultLogger:
    """Writes prefixed, timestamped lines to a stream (stdout by default)."""

    def __init__(self, prefix: str = "", stream: TextIO | None = None) -> None:
        self.prefix = prefix
        self._stream = stream
        self._lock = threading.Lock()

    def _write(self, level: str, fmt: str, args: tuple[Any, ...]) -> None:
        stamp = time.strftime("%Y/%m/%d %H:%M:%S")
        line = f"{self.prefix}{stamp} {level}: {_format(fmt, args)}\n"
        stream = self._stream if self._stream is not None else sys.stdout
        with self._lock:
            stream.write(line)

    def errorf(self, fmt: str, *args: Any) -> None:
        """Log an error message."""
        self._write("[E]", fmt, args)

    def debugf(self, fmt: str, *args: Any) -> None:
        """Log a debug message."""
        self._write("[D]", fmt, args)


class Logger:
    """Forwards messages to a provider only while output is enabled."""

    def __init__(self, prefix: str = "") -> None:
        self._provider: LogProvider = DefaultLogger(prefix)
        self._enabled = False

    def log_mode(self, enable: bool) -> None:
        """Enable or disable log output."""
        self._enabled = bool(enable)

    def set_log_provider(self, provider: LogProvider | None) -> None:
        """Replace the provider; None leaves the current one in place."""
        if provider is not None:
            self._provider = provider

    def errorf(self, fmt: str, *args: Any) -> None:
        """Log an error message if enabled."""
        if self._enabled:
            self._provider.errorf(fmt, *args)

    def debugf(self, fmt: str, *args: Any) -> None:
        """Log a debug message if enabled."""
        if self._enabled:
            self._provider.debugf(fmt, *args)
"""Modbus TCP/RTU/ASCII client, in-memory node registers and Modbus TCP servers."""

__version__ = "0.1.0"
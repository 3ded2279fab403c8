from unittest import mock

import pytest
import serial

from modbuskit.protocol import ModbusError
from modbuskit.serial_port import SERIAL_DEFAULT_TIMEOUT, SerialConfig, SerialPort


class FakePort:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_default_config_is_19200_8_n_1():
    cfg = SerialConfig()
    assert (cfg.baud_rate, cfg.data_bits, cfg.parity, cfg.stop_bits) == (
        19200,
        serial.EIGHTBITS,
        serial.PARITY_NONE,
        serial.STOPBITS_ONE,
    )


def test_default_timeout_is_used():
    port = SerialPort("/dev/ttyS0")
    assert port.timeout == SERIAL_DEFAULT_TIMEOUT


def test_connect_without_port_name_fails():
    port = SerialPort()
    with pytest.raises(ModbusError, match="serial port name is empty"):
        port.connect()
    assert not port.is_connected()


def test_connect_opens_port_once_with_config():
    fake = FakePort()
    cfg = SerialConfig(baud_rate=115200)
    with mock.patch("serial.Serial", return_value=fake) as opener:
        port = SerialPort("/dev/ttyS0", cfg, timeout=0.5)
        port.connect()
        port.connect()
    assert port.is_connected()
    assert opener.call_count == 1
    kwargs = opener.call_args.kwargs
    assert kwargs["port"] == "/dev/ttyS0"
    assert kwargs["baudrate"] == 115200
    assert kwargs["timeout"] == 0.5
    assert kwargs["parity"] == serial.PARITY_NONE


def test_non_positive_timeout_opens_blocking():
    with mock.patch("serial.Serial", return_value=FakePort()) as opener:
        port = SerialPort("/dev/ttyS0", timeout=0)
        port.connect()
    assert port.is_connected() is True
    assert opener.call_args.kwargs["timeout"] is None


def test_close_releases_port():
    fake = FakePort()
    with mock.patch("serial.Serial", return_value=fake):
        port = SerialPort("/dev/ttyS0")
        port.connect()
    port.close()
    assert fake.closed
    assert not port.is_connected()


def test_close_when_not_connected_keeps_disconnected():
    port = SerialPort("/dev/ttyS0")
    port.close()
    assert port.is_connected() is False


def test_open_failure_is_wrapped():
    with mock.patch("serial.Serial", side_effect=serial.SerialException("busy")):
        port = SerialPort("COM11")
        with pytest.raises(ModbusError, match="failed to open serial port: COM11"):
            port.connect()
    assert not port.is_connected()


def test_set_serial_config_and_timeout_apply_on_open():
    port = SerialPort()
    cfg = SerialConfig(baud_rate=9600, parity=serial.PARITY_EVEN)
    port.set_serial_config("COM11", cfg)
    port.set_timeout(2.5)
    with mock.patch("serial.Serial", return_value=FakePort()) as opener:
        port.connect()
    kwargs = opener.call_args.kwargs
    assert kwargs["port"] == "COM11"
    assert kwargs["baudrate"] == 9600
    assert kwargs["parity"] == serial.PARITY_EVEN
    assert kwargs["timeout"] == 2.5


def test_context_manager_opens_and_closes():
    fake = FakePort()
    with mock.patch("serial.Serial", return_value=fake):
        with SerialPort("/dev/ttyS0") as port:
            assert port.is_connected()
    assert fake.closed
    assert not port.is_connected()
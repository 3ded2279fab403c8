import socket
import struct
import threading

import pytest

from modbuskit.functions import ServerCommon
from modbuskit.protocol import ExceptionCode, FunctionCode
from modbuskit.register import NodeRegister
from modbuskit.server_tcp import ServerSession, TCPServer


def make_node(slave_id=1):
    return NodeRegister(slave_id, 0, 10, 0, 10, 0, 10, 0, 10)


def frame(tid, slave_id, func_code, data):
    return struct.pack(">HHHBB", tid, 0, 2 + len(data), slave_id, func_code) + bytes(data)


def recv_exact(sock, size):
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    right.settimeout(5)
    yield left, right
    left.close()
    right.close()


def make_session(conn, node=None):
    common = ServerCommon()
    common.add_nodes(node if node is not None else make_node())
    return ServerSession(conn, 5.0, 1.0, common)


def test_handle_frame_read_coils(pair):
    left, right = pair
    node = make_node()
    node.write_coils(0, 10, b"\xa5\x03")
    session = make_session(left, node)
    response = session.handle_frame(frame(9, 1, FunctionCode.READ_COILS, b"\x00\x00\x00\x0a"))
    assert recv_exact(right, len(response)) == response
    tid, pid, length, unit, func = struct.unpack_from(">HHHBB", response)
    assert (tid, pid, unit, func) == (9, 0, 1, FunctionCode.READ_COILS)
    assert length == len(response) - 6
    assert response[8:] == b"\x02\xa5\x03"


def test_handle_frame_unknown_function(pair):
    left, right = pair
    session = make_session(left)
    response = session.handle_frame(frame(1, 1, 0x41, b"\x00"))
    assert response[7] == 0x41 | 0x80
    assert response[8:] == bytes([ExceptionCode.ILLEGAL_FUNCTION])
    assert recv_exact(right, len(response)) == response


def test_handle_frame_illegal_address(pair):
    left, _right = pair
    session = make_session(left)
    request = frame(2, 1, FunctionCode.READ_HOLDING_REGISTERS, b"\x00\x08\x00\x05")
    response = session.handle_frame(request)
    assert response[7] == FunctionCode.READ_HOLDING_REGISTERS | 0x80
    assert response[8:] == bytes([ExceptionCode.ILLEGAL_DATA_ADDRESS])


def test_handle_frame_unknown_slave_is_silent(pair):
    left, right = pair
    session = make_session(left)
    assert session.handle_frame(frame(1, 7, FunctionCode.READ_COILS, b"\x00\x00\x00\x01")) is None
    right.setblocking(False)
    with pytest.raises(BlockingIOError):
        right.recv(16)


def test_handle_frame_faulty_handler(pair):
    left, _right = pair
    session = make_session(left)

    def broken(reg, data):
        raise RuntimeError("boom")

    session.common.register_function_handler(0x42, broken)
    assert session.handle_frame(frame(1, 1, 0x42, b"")) is None


def test_handle_frame_custom_handler(pair):
    left, _right = pair
    session = make_session(left)
    session.common.register_function_handler(0x43, lambda reg, data: data[::-1])
    response = session.handle_frame(frame(3, 1, 0x43, b"\x01\x02"))
    assert response[7] == 0x43
    assert response[8:] == b"\x02\x01"


def test_run_ends_when_peer_closes(pair):
    left, right = pair
    session = make_session(left)
    right.close()
    session.run(threading.Event())
    assert left.fileno() == -1


def test_run_stops_on_event(pair):
    left, _right = pair
    session = make_session(left)
    stop = threading.Event()
    stop.set()
    session.run(stop)
    assert left.fileno() == -1


def test_run_skips_foreign_protocol(pair):
    left, right = pair
    node = make_node()
    session = make_session(left, node)
    thread = threading.Thread(target=session.run, daemon=True)
    thread.start()
    right.sendall(struct.pack(">HHHB", 1, 5, 6, 1))
    request = frame(4, 1, FunctionCode.WRITE_SINGLE_REGISTER, b"\x00\x01\x12\x34")
    right.sendall(request)
    assert recv_exact(right, len(request)) == request
    right.close()
    thread.join(5)
    assert not thread.is_alive()
    assert node.read_holdings(1, 1) == [0x1234]


def test_server_round_trip():
    server = TCPServer(read_timeout=5.0)
    node = make_node(1)
    server.add_nodes(node, make_node(2))
    server.delete_node(2)
    assert [n.slave_id for n in server.node_list()] == [1]

    thread = threading.Thread(target=server.listen_and_serve, args=("127.0.0.1:0",), daemon=True)
    thread.start()
    assert server.started.wait(5)

    with socket.create_connection(server.server_address, timeout=5) as client:
        write = frame(7, 1, FunctionCode.WRITE_SINGLE_REGISTER, b"\x00\x02\xbe\xef")
        client.sendall(write)
        assert recv_exact(client, len(write)) == write

        read = frame(8, 1, FunctionCode.READ_HOLDING_REGISTERS, b"\x00\x02\x00\x01")
        client.sendall(read)
        response = recv_exact(client, 11)
        assert struct.unpack_from(">H", response)[0] == 8
        assert response[7] == FunctionCode.READ_HOLDING_REGISTERS
        assert response[8:] == b"\x02\xbe\xef"

    assert node.read_holdings(2, 1) == [0xBEEF]
    server.close()
    thread.join(5)
    assert not thread.is_alive()


def test_server_bad_address():
    with pytest.raises(ValueError):
        TCPServer().listen_and_serve("localhost")
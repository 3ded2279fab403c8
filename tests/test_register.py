import pytest

from modbuskit.protocol import ExceptionCode, ExceptionError
from modbuskit.register import NodeRegister, get_bits, set_bits

BIT_QUANTITY = 16
WORD_QUANTITY = 3


def new_node_reg() -> NodeRegister:
    node = NodeRegister(0x01, 0, BIT_QUANTITY, 0, BIT_QUANTITY, 0, WORD_QUANTITY, 0, WORD_QUANTITY)
    node.coils[:] = b"\x55\xaa"
    node.discrete[:] = b"\xaa\x55"
    node.inputs[:] = [0x9012, 0x1234, 0x5678]
    node.holding[:] = [0x1234, 0x5678, 0x9012]
    return node


def assert_illegal_address(excinfo):
    assert excinfo.value.exception_code == ExceptionCode.ILLEGAL_DATA_ADDRESS


def test_new_node_register():
    node = NodeRegister(0x01, 0, 10, 0, 10, 0, 10, 0, 10)
    assert node.slave_id == 0x01
    assert node.coils == bytearray(2)
    assert node.discrete == bytearray(2)
    assert node.inputs == [0] * 10
    assert node.holding == [0] * 10
    assert node.coils_addr_param() == (0, 10)
    assert node.discrete_param() == (0, 10)
    assert node.input_addr_param() == (0, 10)
    assert node.holding_addr_param() == (0, 10)


def test_slave_id_can_change():
    node = NodeRegister(0x01, 0, 0, 0, 0, 0, 0, 0, 0)
    assert node.slave_id == 0x01
    node.slave_id = 0x02
    assert node.slave_id == 0x02


@pytest.mark.parametrize(
    "buf, start, n_bits, want",
    [
        (b"\xaa\x05", 0, 8, 0xAA),
        (b"\xaa\x55", 0, 4, 0x0A),
        (b"\xaa\x55", 4, 4, 0x0A),
        (b"\xaa\x55", 4, 8, 0x5A),
        (b"\xaa\x55", 7, 3, 0x03),
        (b"\xaa\x55", 9, 7, 0x2A),
    ],
)
def test_get_bits(buf, start, n_bits, want):
    assert get_bits(buf, start, n_bits) == want


@pytest.mark.parametrize(
    "start, n_bits, value, want",
    [
        (0, 8, 0xAA, b"\xaa\x00"),
        (0, 4, 0x0A, b"\x0a\x00"),
        (4, 8, 0xAA, b"\xa0\x0a"),
        (1, 1, 0xFF, b"\x02\x00"),
        (9, 7, 0xFF, b"\x00\xfe"),
        (7, 3, 0xFF, b"\x80\x03"),
    ],
)
def test_set_bits(start, n_bits, value, want):
    buf = bytearray(2)
    set_bits(buf, start, n_bits, value)
    assert bytes(buf) == want


@pytest.mark.parametrize(
    "address, quantity, values",
    [(BIT_QUANTITY + 1, 0, b""), (0, BIT_QUANTITY + 1, b""), (1, BIT_QUANTITY, b"")],
)
def test_write_coils_errors(address, quantity, values):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_coils(address, quantity, values)
    assert_illegal_address(excinfo)
    assert bytes(node.coils) == b"\x55\xaa"


@pytest.mark.parametrize(
    "address, quantity, values, want",
    [(4, 8, b"\xff", b"\xf5\xaf"), (4, 10, b"\xff\xff", b"\xf5\xbf")],
)
def test_write_coils(address, quantity, values, want):
    node = new_node_reg()
    node.write_coils(address, quantity, values)
    assert bytes(node.coils) == want


@pytest.mark.parametrize("address, value, want", [(2, False, b"\x51\xaa"), (1, True, b"\x57\xaa")])
def test_write_single_coil(address, value, want):
    node = new_node_reg()
    node.write_single_coil(address, value)
    assert bytes(node.coils) == want


@pytest.mark.parametrize(
    "address, quantity", [(BIT_QUANTITY + 1, 0), (0, BIT_QUANTITY + 1), (1, BIT_QUANTITY)]
)
def test_read_coils_errors(address, quantity):
    with pytest.raises(ExceptionError) as excinfo:
        new_node_reg().read_coils(address, quantity)
    assert_illegal_address(excinfo)


@pytest.mark.parametrize("address, quantity, want", [(4, 8, b"\xa5"), (4, 10, b"\xa5\x02")])
def test_read_coils(address, quantity, want):
    assert new_node_reg().read_coils(address, quantity) == want


@pytest.mark.parametrize("address, want", [(5, False), (6, True)])
def test_read_single_coil(address, want):
    assert new_node_reg().read_single_coil(address) is want


def test_read_single_coil_out_of_range():
    with pytest.raises(ExceptionError) as excinfo:
        new_node_reg().read_single_coil(BIT_QUANTITY)
    assert_illegal_address(excinfo)


@pytest.mark.parametrize(
    "address, quantity, values",
    [(BIT_QUANTITY + 1, 0, b""), (0, BIT_QUANTITY + 1, b""), (1, BIT_QUANTITY, b"")],
)
def test_write_discretes_errors(address, quantity, values):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_discretes(address, quantity, values)
    assert_illegal_address(excinfo)
    assert bytes(node.discrete) == b"\xaa\x55"


@pytest.mark.parametrize(
    "address, quantity, values, want",
    [(4, 8, b"\xff", b"\xfa\x5f"), (4, 10, b"\xff\xff", b"\xfa\x7f")],
)
def test_write_discretes(address, quantity, values, want):
    node = new_node_reg()
    node.write_discretes(address, quantity, values)
    assert bytes(node.discrete) == want


@pytest.mark.parametrize("address, value, want", [(1, False, b"\xa8\x55"), (2, True, b"\xae\x55")])
def test_write_single_discrete(address, value, want):
    node = new_node_reg()
    node.write_single_discrete(address, value)
    assert bytes(node.discrete) == want


@pytest.mark.parametrize(
    "address, quantity", [(BIT_QUANTITY + 1, 0), (0, BIT_QUANTITY + 1), (1, BIT_QUANTITY)]
)
def test_read_discretes_errors(address, quantity):
    with pytest.raises(ExceptionError) as excinfo:
        new_node_reg().read_discretes(address, quantity)
    assert_illegal_address(excinfo)


@pytest.mark.parametrize("address, quantity, want", [(4, 8, b"\x5a"), (4, 10, b"\x5a\x01")])
def test_read_discretes(address, quantity, want):
    assert new_node_reg().read_discretes(address, quantity) == want


@pytest.mark.parametrize("address, want", [(5, True), (6, False)])
def test_read_single_discrete(address, want):
    assert new_node_reg().read_single_discrete(address) is want


def test_read_single_discrete_out_of_range():
    with pytest.raises(ExceptionError) as excinfo:
        new_node_reg().read_single_discrete(BIT_QUANTITY)
    assert_illegal_address(excinfo)


@pytest.mark.parametrize(
    "address, quantity", [(WORD_QUANTITY + 1, 0), (0, WORD_QUANTITY + 1), (1, WORD_QUANTITY)]
)
def test_write_holdings_bytes_errors(address, quantity):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_holdings_bytes(address, quantity, b"")
    assert_illegal_address(excinfo)
    assert node.holding == [0x1234, 0x5678, 0x9012]


def test_write_holdings_bytes():
    node = new_node_reg()
    node.write_holdings_bytes(1, 2, b"\x11\x11\x22\x22")
    assert node.holding == [0x1234, 0x1111, 0x2222]


@pytest.mark.parametrize(
    "address, values",
    [(WORD_QUANTITY + 1, []), (0, [0] * (WORD_QUANTITY + 1)), (1, [0] * (WORD_QUANTITY + 1))],
)
def test_write_holdings_errors(address, values):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_holdings(address, values)
    assert_illegal_address(excinfo)


def test_write_holdings():
    node = new_node_reg()
    node.write_holdings(1, [0x1111, 0x2222])
    assert node.holding == [0x1234, 0x1111, 0x2222]


def test_write_holdings_rejects_oversized_value():
    with pytest.raises(ValueError):
        new_node_reg().write_holdings(0, [0x10000])


@pytest.mark.parametrize(
    "address, quantity", [(WORD_QUANTITY + 1, 0), (0, WORD_QUANTITY + 1), (1, WORD_QUANTITY + 1)]
)
def test_read_holdings_errors(address, quantity):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.read_holdings_bytes(address, quantity)
    assert_illegal_address(excinfo)
    with pytest.raises(ExceptionError) as excinfo:
        node.read_holdings(address, quantity)
    assert_illegal_address(excinfo)


def test_read_holdings_bytes():
    assert new_node_reg().read_holdings_bytes(1, 2) == b"\x56\x78\x90\x12"


def test_read_holdings():
    assert new_node_reg().read_holdings(1, 2) == [0x5678, 0x9012]


@pytest.mark.parametrize(
    "address, quantity", [(WORD_QUANTITY + 1, 0), (0, WORD_QUANTITY + 1), (1, WORD_QUANTITY)]
)
def test_write_inputs_bytes_errors(address, quantity):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_inputs_bytes(address, quantity, b"")
    assert_illegal_address(excinfo)
    assert node.inputs == [0x9012, 0x1234, 0x5678]


def test_write_inputs_bytes():
    node = new_node_reg()
    node.write_inputs_bytes(1, 2, b"\x11\x11\x22\x22")
    assert node.inputs == [0x9012, 0x1111, 0x2222]


@pytest.mark.parametrize(
    "address, values",
    [(WORD_QUANTITY + 1, []), (0, [0] * (WORD_QUANTITY + 1)), (1, [0] * (WORD_QUANTITY + 1))],
)
def test_write_inputs_errors(address, values):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.write_inputs(address, values)
    assert_illegal_address(excinfo)


def test_write_inputs():
    node = new_node_reg()
    node.write_inputs(1, [0x1111, 0x2222])
    assert node.inputs == [0x9012, 0x1111, 0x2222]


@pytest.mark.parametrize(
    "address, quantity", [(WORD_QUANTITY + 1, 0), (0, WORD_QUANTITY + 1), (1, WORD_QUANTITY + 1)]
)
def test_read_inputs_errors(address, quantity):
    node = new_node_reg()
    with pytest.raises(ExceptionError) as excinfo:
        node.read_inputs_bytes(address, quantity)
    assert_illegal_address(excinfo)
    with pytest.raises(ExceptionError) as excinfo:
        node.read_inputs(address, quantity)
    assert_illegal_address(excinfo)


def test_read_inputs_bytes():
    assert new_node_reg().read_inputs_bytes(1, 2) == b"\x12\x34\x56\x78"


def test_read_inputs():
    assert new_node_reg().read_inputs(1, 2) == [0x1234, 0x5678]


def test_holdings_round_trip():
    node = NodeRegister(1, 0, 0, 0, 0, 0, 0, 100, 5)
    node.write_holdings(101, [0xBEEF, 0x0001])
    assert node.read_holdings_bytes(101, 2) == b"\xbe\xef\x00\x01"
    assert node.read_holdings(100, 5) == [0, 0xBEEF, 0x0001, 0, 0]


def test_coils_round_trip_with_offset_start():
    node = NodeRegister(1, 20, 24, 0, 0, 0, 0, 0, 0)
    node.write_coils(23, 12, b"\xab\x0c")
    assert node.read_coils(23, 12) == b"\xab\x0c"


def _mask_node() -> NodeRegister:
    node = NodeRegister(0, 0, 0, 0, 0, 0, 0, 0, 3)
    node.holding[:] = [0x0000, 0x0012, 0x0000]
    return node


def test_mask_write_holding():
    node = _mask_node()
    node.mask_write_holding(1, 0xF2, 0x25)
    assert node.holding[1] == 0x0017


@pytest.mark.parametrize("address", [WORD_QUANTITY + 1, WORD_QUANTITY])
def test_mask_write_holding_out_of_range(address):
    node = _mask_node()
    with pytest.raises(ExceptionError) as excinfo:
        node.mask_write_holding(address, 0, 0)
    assert_illegal_address(excinfo)
    assert node.holding == [0x0000, 0x0012, 0x0000]
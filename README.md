# modbuskit

A Modbus toolkit for Python. It provides:

- `Client` (`modbuskit.client`), a high-level Modbus master. It checks slave ids, quantities and the responses it receives.
- Transport providers:
  - `TCPClientProvider` (`modbuskit.tcp_client`) for Modbus TCP.
  - `RTUClientProvider` (`modbuskit.rtu`) for Modbus RTU over a serial line.
  - `ASCIIClientProvider` (`modbuskit.ascii`) for Modbus ASCII over a serial line.
- `NodeRegister` (`modbuskit.register`), thread-safe in-memory storage for one slave node. It holds coils, discrete inputs, input registers and holding registers.
- `TCPServer` (`modbuskit.server_tcp`), a Modbus TCP server that answers for the nodes it holds.
- `TCPServerSpecial` (`modbuskit.server_special`), a server that connects out to a remote peer and answers the Modbus requests that arrive over that link. It can reconnect automatically, run keep-alive callbacks and use TLS.

## Installation

```
pip install modbuskit
```

The serial transports use `pyserial`.

## Client over TCP

```python
from modbuskit.client import Client
from modbuskit.tcp_client import TCPClientProvider

with Client(TCPClientProvider("localhost:502", timeout=1.0)) as client:
    coils = client.read_coils(1, 0, 10)            # bytes, packed bits (LSB first)
    regs = client.read_holding_registers(1, 0, 4)  # list of ints
    client.write_single_register(1, 2, 0x1234)
    client.write_multiple_registers(1, 0, 2, [0x0001, 0x0002])
    client.mask_write_register(1, 3, 0x00F2, 0x0025)
```

### Client methods

The client offers these methods:

- `read_coils` and `read_discrete_inputs`
- `write_single_coil` and `write_multiple_coils`
- `read_input_registers` and `read_input_registers_bytes`
- `read_holding_registers` and `read_holding_registers_bytes`
- `write_single_register`
- `write_multiple_registers` and `write_multiple_registers_bytes`
- `read_write_multiple_registers` and `read_write_multiple_registers_bytes`
- `mask_write_register`
- `read_fifo_queue`

### Slave ids

- Read requests accept slave ids from `address_min` to `address_max`. These default to 1 and 247.
- Write requests also accept the broadcast id 0.

Pass `address_min` and `address_max` to `Client(...)` if your devices use ids outside that range.

### Errors

- A slave that answers with an exception response raises `ExceptionError`, which carries `exception_code`.
- Failed argument checks and response checks raise `ModbusError`, the base class of `ExceptionError`. Read and write failures on an open link raise it too.
- Both are in `modbuskit.protocol`, together with the `FunctionCode` and `ExceptionCode` enums.
- Opening a TCP connection that fails raises the underlying `OSError`.

## Client over a serial line

```python
from modbuskit.client import Client
from modbuskit.rtu import RTUClientProvider
from modbuskit.serial_port import SerialConfig

provider = RTUClientProvider("/dev/ttyUSB0", SerialConfig(baud_rate=19200), timeout=1.0)
client = Client(provider)
client.connect()
try:
    print(client.read_input_registers(1, 0x0000, 5))
finally:
    client.close()
```

`SerialConfig` defaults to 19200 baud, 8 data bits, no parity and 1 stop bit.

`ASCIIClientProvider` takes the same arguments as `RTUClientProvider`.

The port opens on the first request if `connect()` was not called.

## Logging

Each provider accepts `log_provider` and `enable_logger`:

- `log_provider` is any object with `errorf(fmt, *args)` and `debugf(fmt, *args)`.
- `enable_logger` turns the output on.

You can also switch output at run time with `log_mode(True)`. The default provider, `DefaultLogger` in `modbuskit.log`, writes timestamped lines to stdout. The logs show the raw frames that are sent and received.

## Serving registers over TCP

```python
import threading

from modbuskit.register import NodeRegister
from modbuskit.server_tcp import TCPServer

server = TCPServer()
server.add_nodes(
    # slave id, then start/quantity for coils, discretes, inputs, holdings
    NodeRegister(1, 0, 10, 0, 10, 0, 10, 0, 10),
    NodeRegister(2, 0, 10, 0, 10, 0, 10, 0, 10),
)
thread = threading.Thread(target=server.listen_and_serve, args=("localhost:502",))
thread.start()
server.started.wait()
# ... serve until done ...
server.close()   # stops listening and ends every session
thread.join()
```

### How the server answers

- Requests for a slave id the server does not hold get no answer.
- Function codes without a handler get an "illegal function" exception response.

### Nodes

You manage nodes with these methods:

- `add_nodes`
- `delete_node`
- `delete_all_nodes`
- `get_node`
- `node_list`
- `nodes()`, which iterates over `(slave_id, node)` pairs.

### Custom handlers

To handle a function code yourself, call `register_function_handler(func_code, handler)`.

- The handler receives the `NodeRegister` and the request data, without the function code.
- It returns the response data.
- If it raises `ExceptionError`, the server sends an exception response.

### Node values from your own code

A `NodeRegister` can also be read and written directly. For example:

- `write_single_coil`, `read_coils`
- `write_holdings`, `read_holdings`
- `write_inputs`, `mask_write_holding`

Out-of-range addresses raise `ExceptionError` with the "illegal data address" code.

## Dial-out server

```python
from modbuskit.register import NodeRegister
from modbuskit.server_special import TCPServerSpecial

server = TCPServerSpecial(
    on_connect=lambda s: s.underlying_conn().sendall(b"hello"),
    keep_alive=True,
    keep_alive_interval=20.0,
    on_keep_alive=lambda s: s.underlying_conn().sendall(b"keep alive"),
)
server.add_remote_server("127.0.0.1:3001")   # tcp:// is assumed; ssl://, tls://, tcps:// use TLS
server.add_nodes(NodeRegister(1, 0, 10, 0, 10, 0, 10, 0, 10))
server.start()        # connects and serves in a background thread
...
server.close()
```

To check the state of the link, use `is_connected()` and `is_closed()`.

## Checksums and frames

`modbuskit.checksum` provides `crc16` and `LRC`.

Each transport module has functions to build and check frames without any I/O:

- `encode_rtu_frame` and `decode_rtu_frame`
- `encode_ascii_frame` and `decode_ascii_frame`
- `encode_tcp_frame`, `decode_tcp_frame` and `verify_tcp_frame`

## What it does not do

- There is no command-line program; the package is a library.
- The servers speak Modbus TCP only. There is no RTU or ASCII slave on a serial line.
- The register server does not answer Read FIFO Queue (24) or Report Slave ID (17) unless you register a handler for them. The client can still send Read FIFO Queue requests to other devices.
[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modbuskit"
version = "0.1.0"
description = "Modbus TCP, RTU and ASCII client, in-memory node registers and a Modbus TCP server"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["modbus", "modbus-tcp", "modbus-rtu", "modbus-ascii", "plc", "industrial", "serial"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["modbuskit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

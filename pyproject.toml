[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dabbad"
version = "0.1.0"
description = "Packet capture and replay daemon over Linux packet mmap rings, driven by JSON-line RPC"
requires-python = ">=3.10"
dependencies = []
keywords = ["pcap", "packet-mmap", "capture", "replay", "daemon", "rpc", "bpf"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
dabbad = "dabbad.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["dabbad"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

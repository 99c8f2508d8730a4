# dabbad

`dabbad` is a Linux daemon that runs network captures and replays in
worker threads. Captures read frames from a packet mmap RX ring and write
them to PCAP files. Replays send the packets of a PCAP file through a
packet mmap TX ring, starting again from the first packet when the file
is exhausted. The daemon is controlled over an RPC socket.

## Installation

```
pip install .
```

Raw packet sockets need the `CAP_NET_RAW` capability (and locking ring
memory may need `CAP_IPC_LOCK`). Run the daemon as root or with those
capabilities granted. Only Python 3.10 and later are supported.

## Running the daemon

```
dabbad [--daemonize] [--pidfile <path>] [--tcp[=<port>]] [--local[=<path>]] [--version] [--help]
```

| Option | Meaning |
| --- | --- |
| `--daemonize` | Start a new session and redirect stdin, stdout and stderr to `/dev/null` |
| `--pidfile <path>` | Write the daemon's pid to this file; it is removed on exit |
| `--tcp[=<port>]` | Serve RPC over TCP (default, port 55994) |
| `--local[=<path>]` | Serve RPC over a Unix domain socket (default path `/var/run/dabba/dabba`), created with mode 0660 |
| `--version` | Print the version and exit |
| `--help` | Print the available options and exit |

Options may be given with one or two dashes and may be abbreviated when
the abbreviation is unambiguous. An unknown option prints an error and
the option list. `--daemonize` does not fork: start the daemon in the
background yourself if you want it detached from the shell.

SIGTERM, SIGINT and SIGQUIT stop the daemon, close the server and remove
the pid file. On start the core file size limit is raised to its
maximum. The exit status is 0, or an errno value when the server cannot
be started (`EINVAL`) or the pid file cannot be written.

Examples:

```
dabbad                           # serve RPC on TCP port 55994
dabbad --pidfile /tmp/dabba.pid  # also write the pid to a file
dabbad --tcp=12345               # listen on TCP port 12345
dabbad --local=/tmp/dabba.sock   # listen on a Unix socket
```

## RPC protocol

Each request is one JSON object per line, with a `method` name and
optional `params`. Each reply is one line holding either `result` or
`error` (for a malformed request or an unknown method).

| Method | Params | Result |
| --- | --- | --- |
| `capture_start` | `interface`, `pcap`, `frame_size`, `frame_nr`, optional `append`, optional `sfp` (list of `code`/`jt`/`jf`/`k`) | `{"code": errno}` |
| `capture_stop` | `id` | `{"code": errno}` |
| `capture_stop_all` | | `{"code": errno}` |
| `capture_get` | | `{"list": [...]}` |
| `replay_start` | `interface`, `pcap`, `frame_size`, `frame_nr` | `{"code": errno}` |
| `replay_stop` | `id` | `{"code": errno}` |
| `replay_stop_all` | | `{"code": errno}` |
| `replay_get` | | `{"list": [...]}` |
| `thread_get` | | `{"list": [...]}` |
| `thread_modify` | `id`, optional `sched_policy`, `sched_priority`, `cpu_set` (e.g. `"0,2-5"`) | `{"code": errno}` |
| `thread_capabilities_get` | | `{"list": [...]}` per scheduling policy |

A code of 0 means success. The frame size must be a power of two from
128 to 65536, and the frame count a power of two of at least 8 (frames
are grouped eight to a block). With `append`, a capture adds to an
existing valid PCAP file instead of creating a new one. Ids are the
native thread ids reported by the `*_get` methods.

A minimal client:

```python
import json
import socket

with socket.create_connection(("localhost", 55994)) as conn:
    conn.sendall(json.dumps({"method": "capture_get"}).encode() + b"\n")
    print(conn.makefile().readline())
```

## Using it as a library

```python
from dabbad.pcap import LinkType, create_pcap, open_pcap

with create_pcap("out.pcap", LinkType.EN10MB) as pcap:
    pcap.write_packet(b"\x00" * 60, 60, 1700000000, 0)

with open_pcap("out.pcap", append=False) as pcap:
    packet = pcap.read_packet(2048)
```

- `dabbad.pcap`: creates, opens, validates (either byte order), reads,
  writes and rewinds PCAP files (`create_pcap`, `open_pcap`, `PcapFile`,
  `LinkType`, `link_type_from_arp`, `InvalidPcapError`).
- `dabbad.sockfilter`: classic BPF filter programs (`SockFilter`,
  `SockFilterProgram` with `is_valid`, `pack` and `attach`;
  `detach_filter`).
- `dabbad.misc`: `fd_to_path`, `create_pidfile`, `core_enable`.
- `dabbad.threads`: `ThreadRegistry` of packet threads, their scheduling
  and CPU affinity (`PacketThread`), `thread_capabilities`, and
  `parse_cpu_set` / `format_cpu_set` for CPU lists such as `0,2-5` or
  `8-14:2`.
- `dabbad.packetmmap`: ring layout and setup (`PacketMmap`,
  `ring_layout`, `frame_size_is_valid`).
- `dabbad.packetio`: the RX and TX loops (`packet_rx`, `packet_tx`),
  `TPacketHeader` and `set_packet_loss`.
- `dabbad.capture` and `dabbad.replay`: `CaptureManager` and
  `ReplayManager` start, list and stop captures and replays.
- `dabbad.rpc`: `DabbaService`, which dispatches RPC methods, and
  `start_server`, which returns an `RpcServer`.
- `dabbad.cli`: the `dabbad` command (`main`, `parse_args`).

## What it does not do

- It does not query or change network interface settings: there are no
  methods for link status, drivers, pause frames, offloads, coalescing,
  speed/duplex capabilities or interface statistics.
- It ships no command-line client; talk to the RPC socket yourself as
  shown above.
- The RPC protocol is JSON lines only; there is no authentication beyond
  the permissions of the Unix socket.
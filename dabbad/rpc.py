"""RPC service of the daemon and the server that exposes it.

Requests and replies are JSON objects, one per line. A request holds a
``method`` name and optional ``params``; a reply holds either ``result``
or ``error``.
"""

from __future__ import annotations

import contextlib
import enum
import errno
import json
import os
import socketserver
import stat
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from dabbad.capture import CaptureManager, CaptureSettings
from dabbad.replay import ReplayManager, ReplaySettings
from dabbad.sockfilter import SockFilterProgram
from dabbad.threads import ThreadRegistry, thread_capabilities

_LOCAL_SOCKET_MODE = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP


class AddressType(enum.Enum):
    """Kind of socket the RPC server listens on."""

    LOCAL = "local"
    TCP = "tcp"


def _status(call: Callable[[], Any]) -> dict[str, int]:
    try:
        call()
    except OSError as exc:
        return {"code": exc.errno or errno.EIO}
    except (ValueError, LookupError, TypeError):
        return {"code": errno.EINVAL}
    return {"code": 0}


def _program(records: Iterable[Mapping[str, Any]] | None) -> SockFilterProgram | None:
    records = list(records or ())
    if not records:
        return None
    return SockFilterProgram.from_records(records)


class DabbaService:
    """Dispatches RPC methods to the thread, capture and replay managers."""

    def __init__(
        self,
        threads: ThreadRegistry | None = None,
        captures: CaptureManager | None = None,
        replays: ReplayManager | None = None,
    ) -> None:
        self.threads = ThreadRegistry() if threads is None else threads
        self.captures = CaptureManager(self.threads) if captures is None else captures
        self.replays = ReplayManager(self.threads) if replays is None else replays
        self._lock = threading.Lock()
        self._methods: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "thread_modify": self._thread_modify,
            "thread_get": self._thread_get,
            "thread_capabilities_get": self._thread_capabilities_get,
            "capture_start": self._capture_start,
            "capture_stop": self._capture_stop,
            "capture_stop_all": self._capture_stop_all,
            "capture_get": self._capture_get,
            "replay_start": self._replay_start,
            "replay_stop": self._replay_stop,
            "replay_stop_all": self._replay_stop_all,
            "replay_get": self._replay_get,
        }

    def handle(self, method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Run one RPC method and return its reply.

        Raises ValueError for an unknown method.
        """
        handler = self._methods.get(method)
        if handler is None:
            raise ValueError(f"unknown method {method!r}")
        with self._lock:
            return handler(dict(params or {}))

    def _thread_modify(self, params: dict[str, Any]) -> dict[str, Any]:
        def call() -> None:
            policy = params.get("sched_policy")
            priority = params.get("sched_priority")
            self.threads.modify(
                int(params["id"]),
                None if policy is None else int(policy),
                None if priority is None else int(priority),
                params.get("cpu_set"),
            )

        return _status(call)

    def _thread_get(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"list": [{**entry, "type": int(entry["type"])} for entry in self.threads.describe()]}

    def _thread_capabilities_get(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"list": thread_capabilities()}

    def _capture_start(self, params: dict[str, Any]) -> dict[str, Any]:
        def call() -> None:
            settings = CaptureSettings(
                interface=str(params["interface"]),
                pcap=str(params["pcap"]),
                frame_size=int(params["frame_size"]),
                frame_nr=int(params["frame_nr"]),
                append=bool(params.get("append", False)),
                sfp=_program(params.get("sfp")),
            )
            self.captures.start(settings)

        return _status(call)

    def _capture_stop(self, params: dict[str, Any]) -> dict[str, Any]:
        return _status(lambda: self.captures.stop(int(params["id"])))

    def _capture_stop_all(self, params: dict[str, Any]) -> dict[str, Any]:
        return _status(self.captures.stop_all)

    def _capture_get(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"list": self.captures.describe()}

    def _replay_start(self, params: dict[str, Any]) -> dict[str, Any]:
        def call() -> None:
            settings = ReplaySettings(
                interface=str(params["interface"]),
                pcap=str(params["pcap"]),
                frame_size=int(params["frame_size"]),
                frame_nr=int(params["frame_nr"]),
            )
            self.replays.start(settings)

        return _status(call)

    def _replay_stop(self, params: dict[str, Any]) -> dict[str, Any]:
        return _status(lambda: self.replays.stop(int(params["id"])))

    def _replay_stop_all(self, params: dict[str, Any]) -> dict[str, Any]:
        return _status(self.replays.stop_all)

    def _replay_get(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"list": self.replays.describe()}


def _dispatch(service: DabbaService, line: bytes) -> dict[str, Any]:
    try:
        request = json.loads(line)
        method = request["method"]
        params = request.get("params") or {}
        if not isinstance(method, str) or not isinstance(params, dict):
            raise TypeError("bad request shape")
    except (ValueError, KeyError, TypeError, AttributeError):
        return {"error": "malformed request"}
    try:
        return {"result": service.handle(method, params)}
    except ValueError as exc:
        return {"error": str(exc)}


class _RequestHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        for line in self.rfile:
            line = line.strip()
            if not line:
                continue
            reply = _dispatch(self.server.service, line)  # type: ignore[attr-defined]
            self.wfile.write(json.dumps(reply).encode("utf-8") + b"\n")


class _TCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class _UnixServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


class RpcServer:
    """A listening RPC server bound to a service."""

    def __init__(
        self,
        server: socketserver.BaseServer,
        address_type: AddressType,
        service: DabbaService,
    ) -> None:
        self._server = server
        self.address_type = address_type
        self.service = service
        self._loop_thread: threading.Thread | None = None
        self._closed = False

    @property
    def address(self) -> Any:
        """The bound address: a path or a ``(host, port)`` pair."""
        return self._server.server_address

    def serve_forever(self) -> None:
        """Answer RPC requests until the server is stopped."""
        self._loop_thread = threading.current_thread()
        try:
            self._server.serve_forever()
        finally:
            self._loop_thread = None

    def stop(self) -> None:
        """Stop answering requests and close the listening socket."""
        if self._closed:
            return
        self._closed = True
        loop = self._loop_thread
        if loop is not None and loop is not threading.current_thread():
            self._server.shutdown()
        self._server.server_close()
        if self.address_type is AddressType.LOCAL:
            with contextlib.suppress(OSError):
                os.unlink(self._server.server_address)  # type: ignore[arg-type]


def _remove_stale_socket(path: str) -> None:
    try:
        mode = os.lstat(path).st_mode
    except FileNotFoundError:
        return
    if stat.S_ISSOCK(mode):
        os.unlink(path)


def start_server(
    name: str,
    address_type: AddressType,
    service: DabbaService,
) -> RpcServer:
    """Listen for RPC requests on a local socket path or a TCP port."""
    if not name:
        raise ValueError("server address must not be empty")
    address_type = AddressType(address_type)

    server: socketserver.BaseServer
    if address_type is AddressType.TCP:
        server = _TCPServer(("", int(name)), _RequestHandler)
    else:
        _remove_stale_socket(name)
        server = _UnixServer(name, _RequestHandler)
    server.service = service  # type: ignore[attr-defined]

    rpc_server = RpcServer(server, address_type, service)
    if address_type is AddressType.LOCAL:
        try:
            os.chmod(name, _LOCAL_SOCKET_MODE)
        except OSError:
            rpc_server.stop()
            raise
    return rpc_server
"""Command line entry point of the packet capture daemon."""

from __future__ import annotations

import contextlib
import enum
import errno
import os
import signal
import sys
from dataclasses import dataclass
from types import FrameType

from dabbad.misc import core_enable, create_pidfile
from dabbad.rpc import AddressType, DabbaService, start_server

DABBA_VERSION = "0.1.0"
DABBA_RPC_DEFAULT_PORT = "55994"
DABBA_RPC_DEFAULT_LOCAL_SERVER_NAME = "/var/run/dabba/dabba"

_USAGE = "usage: dabbad [<args>]\n\nThe available options are:\n"


class _ArgKind(enum.Enum):
    NONE = enum.auto()
    REQUIRED = enum.auto()
    OPTIONAL = enum.auto()


_OPTIONS: dict[str, _ArgKind] = {
    "daemonize": _ArgKind.NONE,
    "pidfile": _ArgKind.REQUIRED,
    "tcp": _ArgKind.OPTIONAL,
    "local": _ArgKind.OPTIONAL,
    "version": _ArgKind.NONE,
    "help": _ArgKind.NONE,
}


@dataclass
class _Options:
    action: str = "run"
    daemonize: bool = False
    pidfile: str | None = None
    address_type: AddressType = AddressType.TCP
    server_id: str = DABBA_RPC_DEFAULT_PORT
    error: str | None = None


def format_usage() -> str:
    """Return the option summary printed by ``--help``."""
    lines = [_USAGE]
    for name, kind in _OPTIONS.items():
        suffix = {_ArgKind.REQUIRED: " <arg>", _ArgKind.OPTIONAL: " [arg]"}.get(kind, "")
        lines.append(f"  --{name}{suffix}\n")
    return "".join(lines)


def format_version() -> str:
    """Return the version line printed by ``--version``."""
    return f"dabbad version {DABBA_VERSION}"


def _match(name: str) -> str | None:
    if name in _OPTIONS:
        return name
    if not name:
        return None
    candidates = [option for option in _OPTIONS if option.startswith(name)]
    return candidates[0] if len(candidates) == 1 else None


def _fail(options: _Options, message: str) -> _Options:
    options.action = "help"
    options.error = message
    return options


def parse_args(argv: list[str] | None = None) -> _Options:
    """Parse long options, given with one or two dashes and possibly abbreviated."""
    args = iter(sys.argv[1:] if argv is None else argv)
    options = _Options()

    for arg in args:
        if arg == "--":
            break
        if not arg.startswith("-") or arg == "-":
            continue
        body = arg[2:] if arg.startswith("--") else arg[1:]
        name, eq, value = body.partition("=")
        option = _match(name)
        if option is None:
            return _fail(options, f"unrecognized option '{arg}'")
        kind = _OPTIONS[option]

        if kind is _ArgKind.NONE and eq:
            return _fail(options, f"option '--{option}' doesn't allow an argument")
        argument: str | None = value if eq else None
        if kind is _ArgKind.REQUIRED and not eq:
            argument = next(args, None)
            if argument is None:
                return _fail(options, f"option '--{option}' requires an argument")

        if option == "daemonize":
            options.daemonize = True
        elif option == "pidfile":
            options.pidfile = argument
        elif option == "tcp":
            options.address_type = AddressType.TCP
            options.server_id = argument or DABBA_RPC_DEFAULT_PORT
        elif option == "local":
            options.address_type = AddressType.LOCAL
            options.server_id = argument or DABBA_RPC_DEFAULT_LOCAL_SERVER_NAME
        elif option == "version":
            options.action = "version"
            return options
        else:
            options.action = "help"
            return options

    return options


def _exit_on_signal(signum: int, _frame: FrameType | None) -> None:
    raise SystemExit(signum)


def _daemonize() -> None:
    """Detach from the controlling terminal and silence the standard streams."""
    # A process group leader cannot start a new session; it keeps its own.
    with contextlib.suppress(PermissionError):
        os.setsid()
    null = os.open(os.devnull, os.O_RDWR)
    for target in (0, 1, 2):
        os.dup2(null, target)
    if null > 2:
        os.close(null)


def main(argv: list[str] | None = None) -> int:
    """Run the daemon; return 0 on success or an errno value on failure."""
    options = parse_args(argv)

    if options.action == "version":
        print(format_version())
        return 0
    if options.action == "help":
        if options.error:
            print(f"dabbad: {options.error}", file=sys.stderr)
        print(format_usage(), end="")
        return 0

    previous = {
        sig: signal.signal(sig, _exit_on_signal)
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)
    }
    try:
        with contextlib.suppress(OSError, ValueError):
            core_enable()

        try:
            server = start_server(options.server_id, options.address_type, DabbaService())
        except (OSError, ValueError):
            return errno.EINVAL

        try:
            if options.daemonize:
                try:
                    _daemonize()
                except OSError as exc:
                    return exc.errno or errno.EIO
            if options.pidfile:
                try:
                    create_pidfile(options.pidfile)
                except OSError as exc:
                    return exc.errno or errno.EIO
            server.serve_forever()
            return 0
        finally:
            if options.pidfile:
                with contextlib.suppress(OSError):
                    os.unlink(options.pidfile)
            server.stop()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
"""Classic BPF socket filter programs."""

from __future__ import annotations

import socket
import struct
from array import array
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

SO_ATTACH_FILTER = getattr(socket, "SO_ATTACH_FILTER", 26)
SO_DETACH_FILTER = getattr(socket, "SO_DETACH_FILTER", 27)

BPF_MAXINSNS = 4096
BPF_MEMWORDS = 16

BPF_LD = 0x00
BPF_LDX = 0x01
BPF_ST = 0x02
BPF_STX = 0x03
BPF_ALU = 0x04
BPF_JMP = 0x05
BPF_RET = 0x06
BPF_MISC = 0x07

BPF_K = 0x00
BPF_MEM = 0x60
BPF_DIV = 0x30
BPF_MOD = 0x90
BPF_JA = 0x00

_INSN = struct.Struct("=HBBI")
_FPROG = struct.Struct("@HP")


def _class(code: int) -> int:
    return code & 0x07


def _op(code: int) -> int:
    return code & 0xF0


def _src(code: int) -> int:
    return code & 0x08


def _mode(code: int) -> int:
    return code & 0xE0


@dataclass(frozen=True)
class SockFilter:
    """One BPF instruction."""

    code: int
    jt: int = 0
    jf: int = 0
    k: int = 0

    def pack(self) -> bytes:
        """Return the kernel ``struct sock_filter`` encoding."""
        return _INSN.pack(self.code, self.jt, self.jf, self.k)


@dataclass(frozen=True)
class SockFilterProgram:
    """An ordered sequence of BPF instructions."""

    filters: tuple[SockFilter, ...] = ()

    def __len__(self) -> int:
        return len(self.filters)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> SockFilterProgram:
        """Build a program from ``code``/``jt``/``jf``/``k`` mappings.

        Raises ValueError if the resulting program is not a valid filter.
        """
        program = cls(
            tuple(
                SockFilter(
                    int(record["code"]),
                    int(record.get("jt", 0)),
                    int(record.get("jf", 0)),
                    int(record.get("k", 0)),
                )
                for record in records
            )
        )
        if not program.is_valid():
            raise ValueError("invalid socket filter program")
        return program

    def to_records(self) -> list[dict[str, int]]:
        """Return the instructions as plain mappings."""
        return [{"code": f.code, "jt": f.jt, "jf": f.jf, "k": f.k} for f in self.filters]

    def is_valid(self) -> bool:
        """Check the program the way the kernel filter checker does."""
        count = len(self.filters)
        if not 0 < count <= BPF_MAXINSNS:
            return False

        for index, insn in enumerate(self.filters):
            if not (0 <= insn.code <= 0xFFFF and 0 <= insn.jt <= 0xFF and 0 <= insn.jf <= 0xFF):
                return False
            if not 0 <= insn.k <= 0xFFFFFFFF:
                return False

            kind = _class(insn.code)
            if kind in (BPF_LD, BPF_LDX) and _mode(insn.code) == BPF_MEM:
                if insn.k >= BPF_MEMWORDS:
                    return False
            elif kind in (BPF_ST, BPF_STX):
                if insn.k >= BPF_MEMWORDS:
                    return False
            elif kind == BPF_ALU:
                if _op(insn.code) in (BPF_DIV, BPF_MOD) and _src(insn.code) == BPF_K and insn.k == 0:
                    return False
            elif kind == BPF_JMP:
                remaining = count - index - 1
                if _op(insn.code) == BPF_JA:
                    if insn.k >= remaining:
                        return False
                elif insn.jt >= remaining or insn.jf >= remaining:
                    return False

        return _class(self.filters[-1].code) == BPF_RET

    def pack(self) -> bytes:
        """Return the instructions as the kernel's contiguous array."""
        return b"".join(f.pack() for f in self.filters)

    def attach(self, sock: socket.socket) -> None:
        """Attach this program to ``sock`` as its receive filter."""
        if not self.is_valid():
            raise ValueError("invalid socket filter program")
        buffer = array("B", self.pack())
        address, _ = buffer.buffer_info()
        fprog = _FPROG.pack(len(self.filters), address)
        sock.setsockopt(socket.SOL_SOCKET, SO_ATTACH_FILTER, fprog)


def detach_filter(sock: socket.socket) -> None:
    """Remove any filter attached to ``sock``."""
    sock.setsockopt(socket.SOL_SOCKET, SO_DETACH_FILTER, 0)
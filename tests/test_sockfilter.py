import socket
import struct

import pytest

from dabbad.sockfilter import (
    BPF_MAXINSNS,
    SO_ATTACH_FILTER,
    SO_DETACH_FILTER,
    SockFilter,
    SockFilterProgram,
    detach_filter,
)

RET_K = 0x06
LD_W_ABS = 0x20
JEQ_K = 0x15
JA = 0x05
ST = 0x02
DIV_K = 0x34

ACCEPT_ALL = SockFilter(RET_K, 0, 0, 0xFFFF)


class FakeSocket:
    def __init__(self):
        self.calls = []

    def setsockopt(self, level, optname, value):
        self.calls.append((level, optname, value))


def test_instruction_pack_layout():
    insn = SockFilter(LD_W_ABS, 1, 2, 12)
    assert insn.pack() == struct.pack("=HBBI", LD_W_ABS, 1, 2, 12)
    assert len(insn.pack()) == 8


def test_records_round_trip():
    records = [
        {"code": LD_W_ABS, "jt": 0, "jf": 0, "k": 12},
        {"code": JEQ_K, "jt": 0, "jf": 1, "k": 0x0800},
        {"code": RET_K, "jt": 0, "jf": 0, "k": 0xFFFF},
        {"code": RET_K, "jt": 0, "jf": 0, "k": 0},
    ]
    program = SockFilterProgram.from_records(records)
    assert len(program) == len(records)
    assert program.to_records() == records
    assert program.is_valid()


def test_from_records_defaults_missing_fields():
    program = SockFilterProgram.from_records([{"code": RET_K}])
    assert program.filters == (SockFilter(RET_K, 0, 0, 0),)


def test_from_records_rejects_invalid_program():
    with pytest.raises(ValueError):
        SockFilterProgram.from_records([{"code": LD_W_ABS, "k": 12}])


def test_empty_program_invalid():
    assert not SockFilterProgram().is_valid()


def test_too_long_program_invalid():
    program = SockFilterProgram((ACCEPT_ALL,) * (BPF_MAXINSNS + 1))
    assert not program.is_valid()
    assert SockFilterProgram((ACCEPT_ALL,) * BPF_MAXINSNS).is_valid()


def test_last_instruction_must_return():
    program = SockFilterProgram((ACCEPT_ALL, SockFilter(LD_W_ABS, 0, 0, 12)))
    assert not program.is_valid()


def test_conditional_jump_out_of_range_invalid():
    program = SockFilterProgram((SockFilter(JEQ_K, 0, 1, 1), ACCEPT_ALL))
    assert not program.is_valid()


def test_unconditional_jump_out_of_range_invalid():
    assert not SockFilterProgram((SockFilter(JA, 0, 0, 1), ACCEPT_ALL)).is_valid()
    assert SockFilterProgram((SockFilter(JA, 0, 0, 0), ACCEPT_ALL)).is_valid()


def test_scratch_memory_index_checked():
    assert not SockFilterProgram((SockFilter(ST, 0, 0, 16), ACCEPT_ALL)).is_valid()
    assert SockFilterProgram((SockFilter(ST, 0, 0, 15), ACCEPT_ALL)).is_valid()


def test_division_by_constant_zero_invalid():
    assert not SockFilterProgram((SockFilter(DIV_K, 0, 0, 0), ACCEPT_ALL)).is_valid()


def test_program_pack_concatenates_instructions():
    program = SockFilterProgram((SockFilter(LD_W_ABS, 0, 0, 12), ACCEPT_ALL))
    packed = program.pack()
    assert len(packed) == 8 * len(program)
    assert packed == program.filters[0].pack() + program.filters[1].pack()


def test_attach_passes_fprog_to_socket():
    program = SockFilterProgram((ACCEPT_ALL,))
    sock = FakeSocket()
    program.attach(sock)
    assert len(sock.calls) == 1
    level, optname, value = sock.calls[0]
    assert (level, optname) == (socket.SOL_SOCKET, SO_ATTACH_FILTER)
    assert len(value) == struct.calcsize("@HP")
    assert struct.unpack("@HP", value)[0] == 1


def test_attach_rejects_invalid_program():
    sock = FakeSocket()
    with pytest.raises(ValueError):
        SockFilterProgram().attach(sock)
    assert sock.calls == []


def test_detach_filter_uses_detach_option():
    sock = FakeSocket()
    detach_filter(sock)
    assert sock.calls == [(socket.SOL_SOCKET, SO_DETACH_FILTER, 0)]
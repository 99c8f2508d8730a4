import errno
import os
import struct

import pytest

from dabbad.pcap import (
    ARPHRD_ETHER,
    ARPHRD_LOOPBACK,
    FILE_HEADER_SIZE,
    PACKET_HEADER_SIZE,
    PCAP_DEFAULT_SNAPSHOT_LEN,
    PCAP_VERSION_MAJOR,
    PCAP_VERSION_MINOR,
    TCPDUMP_MAGIC,
    InvalidPcapError,
    LinkType,
    PcapFile,
    create_pcap,
    link_type_from_arp,
    open_pcap,
)


@pytest.fixture
def pcap_path(tmp_path):
    return tmp_path / "capture.pcap"


def test_link_type_from_arp_known_types():
    assert link_type_from_arp(ARPHRD_ETHER) is LinkType.EN10MB
    assert link_type_from_arp(ARPHRD_LOOPBACK) is LinkType.EN10MB


def test_link_type_from_arp_unknown_type():
    with pytest.raises(ValueError):
        link_type_from_arp(ARPHRD_ETHER + 1000)


def test_create_writes_file_header(pcap_path):
    with create_pcap(pcap_path) as pcap:
        assert isinstance(pcap, PcapFile)
    data = pcap_path.read_bytes()
    assert len(data) == FILE_HEADER_SIZE
    magic, major, minor, zone, sigfigs, snaplen, linktype = struct.unpack("=IHHiIII", data)
    assert magic == 0xA1B2C3D4 == TCPDUMP_MAGIC
    assert (major, minor) == (PCAP_VERSION_MAJOR, PCAP_VERSION_MINOR)
    assert zone == 0 and sigfigs == 0
    assert snaplen == PCAP_DEFAULT_SNAPSHOT_LEN
    assert linktype == LinkType.EN10MB


def test_write_then_read_round_trip(pcap_path):
    packets = [b"\x01\x02\x03\x04", b"hello world", bytes(range(60))]
    with create_pcap(pcap_path) as pcap:
        for index, packet in enumerate(packets):
            assert pcap.write_packet(packet, ts_sec=index, ts_usec=index * 10) == len(packet)

    with open_pcap(pcap_path) as pcap:
        read = [pcap.read_packet() for _ in packets]
        assert pcap.read_packet() == b""
    assert read == packets


def test_packet_record_layout(pcap_path):
    with create_pcap(pcap_path) as pcap:
        pcap.write_packet(b"abcd", length=100, ts_sec=7, ts_usec=9)
    data = pcap_path.read_bytes()[FILE_HEADER_SIZE:]
    assert struct.unpack("=IIII", data[:PACKET_HEADER_SIZE]) == (7, 9, 4, 100)
    assert data[PACKET_HEADER_SIZE:] == b"abcd"


def test_read_packet_limits_length(pcap_path):
    with create_pcap(pcap_path) as pcap:
        pcap.write_packet(b"abcdefgh")
    with open_pcap(pcap_path) as pcap:
        assert pcap.read_packet(3) == b"abc"


def test_rewind_returns_to_first_packet(pcap_path):
    with create_pcap(pcap_path) as pcap:
        pcap.write_packet(b"first")
        pcap.write_packet(b"second")
    with open_pcap(pcap_path) as pcap:
        assert pcap.read_packet() == b"first"
        assert pcap.read_packet() == b"second"
        pcap.rewind()
        assert pcap.read_packet() == b"first"


def test_append_adds_after_existing_packets(pcap_path):
    with create_pcap(pcap_path) as pcap:
        pcap.write_packet(b"one")
    with open_pcap(pcap_path, append=True) as pcap:
        pcap.write_packet(b"two")
    with open_pcap(pcap_path) as pcap:
        assert [pcap.read_packet(), pcap.read_packet(), pcap.read_packet()] == [b"one", b"two", b""]


def test_open_accepts_swapped_endianness(pcap_path):
    swapped = ">" if struct.pack("=I", 1) == struct.pack("<I", 1) else "<"
    header = struct.pack(
        swapped + "IHHiIII",
        TCPDUMP_MAGIC,
        PCAP_VERSION_MAJOR,
        PCAP_VERSION_MINOR,
        0,
        0,
        PCAP_DEFAULT_SNAPSHOT_LEN,
        int(LinkType.EN10MB),
    )
    pcap_path.write_bytes(header)
    with open_pcap(pcap_path) as pcap:
        assert pcap.read_packet() == b""


def test_open_rejects_bad_magic(pcap_path):
    pcap_path.write_bytes(b"\x00" * FILE_HEADER_SIZE)
    with pytest.raises(InvalidPcapError) as excinfo:
        open_pcap(pcap_path)
    assert excinfo.value.errno == errno.EINVAL


def test_open_rejects_unsupported_linktype(pcap_path):
    header = struct.pack(
        "=IHHiIII", TCPDUMP_MAGIC, PCAP_VERSION_MAJOR, PCAP_VERSION_MINOR, 0, 0, 65535, 105
    )
    pcap_path.write_bytes(header)
    with pytest.raises(InvalidPcapError):
        open_pcap(pcap_path)


def test_open_rejects_short_file(pcap_path):
    pcap_path.write_bytes(b"\xd4\xc3")
    with pytest.raises(InvalidPcapError) as excinfo:
        open_pcap(pcap_path)
    assert excinfo.value.errno == errno.EIO


def test_open_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        open_pcap(tmp_path / "absent.pcap")


def test_write_empty_packet_rejected(pcap_path):
    with create_pcap(pcap_path) as pcap:
        with pytest.raises(ValueError):
            pcap.write_packet(b"")


def test_destroy_removes_file(pcap_path):
    pcap = create_pcap(pcap_path)
    pcap.destroy()
    assert not pcap_path.exists()
    assert pcap.closed


def test_closed_file_refuses_io(pcap_path):
    pcap = create_pcap(pcap_path)
    fd = pcap.fileno()
    pcap.close()
    with pytest.raises(ValueError):
        pcap.fileno()
    with pytest.raises(OSError):
        os.fstat(fd)
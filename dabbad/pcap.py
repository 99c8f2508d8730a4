"""Reading and writing of PCAP capture files."""

from __future__ import annotations

import contextlib
import enum
import errno
import os
import struct
import sys

TCPDUMP_MAGIC = 0xA1B2C3D4
PCAP_VERSION_MAJOR = 2
PCAP_VERSION_MINOR = 4
PCAP_DEFAULT_SNAPSHOT_LEN = 65535

ARPHRD_ETHER = 1
ARPHRD_LOOPBACK = 772

_DEFFILEMODE = 0o666
_U32 = 0xFFFFFFFF

_NATIVE_FILE_HEADER = struct.Struct("=IHHiIII")
_SWAPPED_FILE_HEADER = struct.Struct(">IHHiIII" if sys.byteorder == "little" else "<IHHiIII")
_PACKET_HEADER = struct.Struct("=IIII")

FILE_HEADER_SIZE = _NATIVE_FILE_HEADER.size
PACKET_HEADER_SIZE = _PACKET_HEADER.size


class LinkType(enum.IntEnum):
    """PCAP link-layer header types supported by the daemon."""

    EN10MB = 1


class InvalidPcapError(OSError):
    """Raised when a file is not a usable PCAP capture."""


def link_type_from_arp(arp_type: int) -> LinkType:
    """Map an interface ARP hardware type to a PCAP link type."""
    if arp_type in (ARPHRD_ETHER, ARPHRD_LOOPBACK):
        return LinkType.EN10MB
    raise ValueError(f"unsupported ARP hardware type {arp_type}")


def _linktype_is_valid(linktype: int) -> bool:
    return linktype == LinkType.EN10MB


def _check_header(fd: int) -> None:
    data = os.read(fd, FILE_HEADER_SIZE)
    if len(data) != FILE_HEADER_SIZE:
        raise InvalidPcapError(errno.EIO, "PCAP file header could not be read")

    magic, major, minor, _zone, _sigfigs, _snaplen, linktype = _NATIVE_FILE_HEADER.unpack(data)
    if magic != TCPDUMP_MAGIC:
        # Written on a machine of the other endianness.
        magic, major, minor, _zone, _sigfigs, _snaplen, linktype = _SWAPPED_FILE_HEADER.unpack(data)

    if (
        magic != TCPDUMP_MAGIC
        or major != PCAP_VERSION_MAJOR
        or minor != PCAP_VERSION_MINOR
        or not _linktype_is_valid(linktype)
    ):
        raise InvalidPcapError(errno.EINVAL, "invalid PCAP file header")


class PcapFile:
    """An open PCAP file positioned for packet reads or writes."""

    def __init__(self, fd: int, path: str | os.PathLike[str]) -> None:
        self._fd = fd
        self.path = os.fspath(path)

    @property
    def closed(self) -> bool:
        return self._fd < 0

    def fileno(self) -> int:
        """Return the underlying file descriptor."""
        if self._fd < 0:
            raise ValueError("PCAP file is closed")
        return self._fd

    def write_packet(
        self,
        packet: bytes,
        length: int | None = None,
        ts_sec: int = 0,
        ts_usec: int = 0,
    ) -> int:
        """Append one packet record; return the number of payload bytes written.

        ``length`` is the original length on the wire and defaults to the
        size of ``packet``.
        """
        data = bytes(packet)
        if not data:
            raise ValueError("cannot write an empty packet")
        if length is None:
            length = len(data)

        fd = self.fileno()
        header = _PACKET_HEADER.pack(ts_sec & _U32, ts_usec & _U32, len(data), length & _U32)
        if os.write(fd, header) != len(header):
            raise OSError(errno.EIO, "packet header could not be written")
        if os.write(fd, data) != len(data):
            raise OSError(errno.EIO, "packet payload could not be written")
        return len(data)

    def read_packet(self, max_length: int = PCAP_DEFAULT_SNAPSHOT_LEN) -> bytes:
        """Read the next packet, at most ``max_length`` bytes of it.

        Returns empty bytes when no further packet header can be read.
        """
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        fd = self.fileno()
        header = os.read(fd, PACKET_HEADER_SIZE)
        if len(header) != PACKET_HEADER_SIZE:
            return b""
        _sec, _usec, caplen, _len = _PACKET_HEADER.unpack(header)
        return os.read(fd, min(caplen, max_length))

    def rewind(self) -> None:
        """Move back to the first packet record."""
        os.lseek(self.fileno(), FILE_HEADER_SIZE, os.SEEK_SET)

    def close(self) -> None:
        if self._fd >= 0:
            fd, self._fd = self._fd, -1
            os.close(fd)

    def destroy(self) -> None:
        """Close the file and remove it from disk."""
        self.close()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.path)

    def __enter__(self) -> PcapFile:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def create_pcap(path: str | os.PathLike[str], linktype: LinkType = LinkType.EN10MB) -> PcapFile:
    """Create (or truncate) a PCAP file and write its file header."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _DEFFILEMODE)
    pcap = PcapFile(fd, path)
    header = _NATIVE_FILE_HEADER.pack(
        TCPDUMP_MAGIC,
        PCAP_VERSION_MAJOR,
        PCAP_VERSION_MINOR,
        0,
        0,
        PCAP_DEFAULT_SNAPSHOT_LEN,
        int(linktype),
    )
    try:
        if os.write(fd, header) != len(header):
            raise OSError(errno.EIO, "PCAP file header could not be written")
    except OSError:
        pcap.destroy()
        raise
    return pcap


def open_pcap(path: str | os.PathLike[str], append: bool = False) -> PcapFile:
    """Open an existing PCAP file after checking its header.

    Without ``append`` the file is opened read-only and positioned on its
    first packet; with it, read-write and positioned at its end.
    """
    flags = os.O_RDWR if append else os.O_RDONLY
    fd = os.open(path, flags)
    try:
        _check_header(fd)
        if append:
            os.lseek(fd, 0, os.SEEK_END)
    except OSError:
        os.close(fd)
        raise
    return PcapFile(fd, path)
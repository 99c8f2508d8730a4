"""Packet receive and transmit loops over memory-mapped packet rings."""

from __future__ import annotations

import contextlib
import select
import socket
import struct
import threading
from dataclasses import dataclass, replace

from dabbad.packetmmap import SOL_PACKET, PacketMmap
from dabbad.pcap import PcapFile
from dabbad.sockfilter import SockFilterProgram

TP_STATUS_KERNEL = 0
TP_STATUS_USER = 1
TP_STATUS_AVAILABLE = 0
TP_STATUS_SEND_REQUEST = 1

PACKET_LOSS = 14

_POLL_TIMEOUT_MS = 100
_POLL_EVENTS = select.POLLIN | select.POLLRDNORM | select.POLLERR
_HEADER = struct.Struct("@LIIHHII")


def _tpacket_align(size: int) -> int:
    return (size + 15) & ~15


TPACKET_HDRLEN = _tpacket_align(_HEADER.size)


@dataclass(frozen=True)
class TPacketHeader:
    """The header the kernel keeps at the start of each ring frame."""

    status: int = 0
    length: int = 0
    snaplen: int = 0
    mac: int = 0
    net: int = 0
    sec: int = 0
    usec: int = 0

    @classmethod
    def from_frame(cls, frame: memoryview | bytearray | bytes) -> TPacketHeader:
        """Decode the header at the start of ``frame``."""
        return cls(*_HEADER.unpack_from(frame))

    def write_to(self, frame: memoryview | bytearray) -> None:
        """Encode this header at the start of ``frame``."""
        _HEADER.pack_into(
            frame,
            0,
            self.status,
            self.length,
            self.snaplen,
            self.mac,
            self.net,
            self.sec,
            self.usec,
        )


@dataclass(eq=False)
class PacketRx:
    """A receive ring together with where its packets are saved."""

    pkt_mmap: PacketMmap
    pcap: PcapFile | None = None
    sfp: SockFilterProgram | None = None


@dataclass(eq=False)
class PacketTx:
    """A transmit ring together with the capture it replays."""

    pkt_mmap: PacketMmap
    pcap: PcapFile


def packet_rx(rx: PacketRx, stop: threading.Event) -> None:
    """Hand received frames back to the kernel, saving them to the PCAP file.

    Runs until ``stop`` is set.
    """
    ring = rx.pkt_mmap
    frames = ring.frames()
    frame_size = ring.layout.frame_size
    poller = select.poll()
    poller.register(ring.sock.fileno(), _POLL_EVENTS)

    while not stop.is_set():
        for frame in frames:
            if stop.is_set():
                return
            if TPacketHeader.from_frame(frame).status == TP_STATUS_KERNEL:
                poller.poll(_POLL_TIMEOUT_MS)

            header = TPacketHeader.from_frame(frame)
            if header.status & TP_STATUS_USER != TP_STATUS_USER:
                continue

            if rx.pcap is not None:
                caplen = min(header.snaplen, frame_size)
                data = bytes(frame[header.mac : header.mac + caplen])
                if data:
                    rx.pcap.write_packet(data, header.length, header.sec, header.usec)

            replace(header, status=TP_STATUS_KERNEL).write_to(frame)


def packet_tx(tx: PacketTx, stop: threading.Event) -> None:
    """Fill free transmit frames from the PCAP file, replaying it in a loop.

    Runs until ``stop`` is set.
    """
    ring = tx.pkt_mmap
    frames = ring.frames()
    capacity = ring.layout.frame_size - TPACKET_HDRLEN

    while not stop.is_set():
        eof = False
        while not eof:
            if stop.is_set():
                return
            for frame in frames:
                header = TPacketHeader.from_frame(frame)
                if header.status != TP_STATUS_AVAILABLE:
                    continue
                data = tx.pcap.read_packet(capacity)
                if not data:
                    eof = True
                    break
                frame[TPACKET_HDRLEN : TPACKET_HDRLEN + len(data)] = data
                replace(
                    header,
                    status=TP_STATUS_SEND_REQUEST,
                    length=len(data),
                    snaplen=len(data),
                ).write_to(frame)

            with contextlib.suppress(OSError):
                ring.sock.send(b"", socket.MSG_DONTWAIT)

        tx.pcap.rewind()


def set_packet_loss(sock: socket.socket, discard: bool) -> None:
    """Tell the kernel whether malformed transmit frames are discarded."""
    sock.setsockopt(SOL_PACKET, PACKET_LOSS, int(discard))
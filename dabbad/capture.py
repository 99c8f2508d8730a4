"""Management of running packet captures."""

from __future__ import annotations

import contextlib
import functools
import os
import socket
from dataclasses import dataclass
from typing import Any

from dabbad.misc import fd_to_path
from dabbad.packetio import PacketRx, packet_rx
from dabbad.packetmmap import ETH_P_ALL, PacketMmap, PacketMmapType, frame_size_is_valid
from dabbad.pcap import LinkType, PcapFile, create_pcap, open_pcap
from dabbad.sockfilter import SockFilterProgram, detach_filter
from dabbad.threads import PacketThread, ThreadRegistry, ThreadType


@dataclass
class CaptureSettings:
    """What a new capture listens on and where it writes."""

    interface: str
    pcap: str | os.PathLike[str]
    frame_size: int
    frame_nr: int
    append: bool = False
    sfp: SockFilterProgram | None = None

    def is_valid(self) -> bool:
        """Check names are set, the frame size supported and frames requested."""
        if not self.interface:
            return False
        if not os.fspath(self.pcap):
            return False
        if not frame_size_is_valid(self.frame_size):
            return False
        return bool(self.frame_nr)


@dataclass(eq=False)
class Capture:
    """A running capture: its worker thread and its receive ring."""

    thread: PacketThread
    rx: PacketRx

    @property
    def id(self) -> int | None:
        return self.thread.id


class CaptureManager:
    """Starts, stops and lists packet captures."""

    def __init__(self, threads: ThreadRegistry) -> None:
        self._threads = threads
        self._captures: list[Capture] = []

    def __len__(self) -> int:
        return len(self._captures)

    def _add(self, capture: Capture) -> None:
        self._captures.append(capture)

    def _find(self, thread_id: int) -> Capture | None:
        return next((c for c in self._captures if c.id == thread_id), None)

    def start(self, settings: CaptureSettings) -> Capture:
        """Open a packet socket and ring on the interface and start capturing."""
        if not settings.is_valid():
            raise ValueError("invalid capture settings")

        sock = socket.socket(socket.AF_PACKET, socket.SOCK_RAW, socket.htons(ETH_P_ALL))
        pcap: PcapFile | None = None
        ring: PacketMmap | None = None
        try:
            if settings.append:
                pcap = open_pcap(settings.pcap, append=True)
            else:
                pcap = create_pcap(settings.pcap, LinkType.EN10MB)

            sfp = settings.sfp if settings.sfp is not None and len(settings.sfp) else None
            if sfp is not None:
                sfp.attach(sock)

            ring = PacketMmap.create(
                settings.interface,
                sock,
                PacketMmapType.RX,
                settings.frame_size,
                settings.frame_nr,
            )
            rx = PacketRx(ring, pcap, sfp)
            thread = PacketThread(ThreadType.CAPTURE)
            self._threads.start(thread, functools.partial(packet_rx, rx))
        except BaseException:
            if ring is not None:
                ring.destroy()
            if pcap is not None:
                pcap.close()
            sock.close()
            raise

        capture = Capture(thread, rx)
        self._add(capture)
        return capture

    def _release(self, capture: Capture) -> None:
        rx = capture.rx
        sock = rx.pkt_mmap.sock
        with contextlib.suppress(OSError):
            detach_filter(sock)
        if rx.pcap is not None:
            rx.pcap.close()
        rx.pkt_mmap.destroy()
        sock.close()

    def stop(self, thread_id: int) -> None:
        """Stop the capture run by ``thread_id`` and release its resources."""
        capture = self._find(thread_id)
        if capture is None:
            raise LookupError(f"no capture with thread id {thread_id}")
        self._threads.stop(capture.thread)
        self._captures.remove(capture)
        self._release(capture)

    def stop_all(self) -> None:
        """Stop every capture, in start order; the first failure is raised."""
        for capture in list(self._captures):
            self._threads.stop(capture.thread)
            self._captures.remove(capture)
            self._release(capture)

    def describe(self) -> list[dict[str, Any]]:
        """Report the settings of every running capture."""
        report = []
        for capture in self._captures:
            rx = capture.rx
            ring = rx.pkt_mmap
            pcap_path = ""
            if rx.pcap is not None and not rx.pcap.closed:
                with contextlib.suppress(OSError, ValueError):
                    pcap_path = fd_to_path(rx.pcap.fileno())
            interface = ""
            with contextlib.suppress(OSError):
                interface = socket.if_indextoname(ring.ifindex)
            report.append(
                {
                    "id": capture.id,
                    "interface": interface,
                    "pcap": pcap_path,
                    "frame_size": ring.layout.frame_size,
                    "frame_nr": ring.layout.frame_nr,
                    "sfp": rx.sfp.to_records() if rx.sfp is not None else [],
                    "status": 0,
                }
            )
        return report
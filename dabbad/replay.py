"""Management of running packet replays."""

from __future__ import annotations

import contextlib
import functools
import os
import socket
from dataclasses import dataclass
from typing import Any

from dabbad.misc import fd_to_path
from dabbad.packetio import PacketTx, packet_tx
from dabbad.packetmmap import ETH_P_ALL, PacketMmap, PacketMmapType, frame_size_is_valid
from dabbad.pcap import PcapFile, open_pcap
from dabbad.threads import PacketThread, ThreadRegistry, ThreadType


@dataclass
class ReplaySettings:
    """Which capture a new replay sends and on which interface."""

    interface: str
    pcap: str | os.PathLike[str]
    frame_size: int
    frame_nr: int

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
class Replay:
    """A running replay: its worker thread and its transmit ring."""

    thread: PacketThread
    tx: PacketTx

    @property
    def id(self) -> int | None:
        return self.thread.id


class ReplayManager:
    """Starts, stops and lists packet replays."""

    def __init__(self, threads: ThreadRegistry) -> None:
        self._threads = threads
        self._replays: list[Replay] = []

    def __len__(self) -> int:
        return len(self._replays)

    def _add(self, replay: Replay) -> None:
        self._replays.append(replay)

    def _find(self, thread_id: int) -> Replay | None:
        return next((r for r in self._replays if r.id == thread_id), None)

    def start(self, settings: ReplaySettings) -> Replay:
        """Open a packet socket and ring on the interface and start replaying."""
        if not settings.is_valid():
            raise ValueError("invalid replay settings")

        sock = socket.socket(socket.AF_PACKET, socket.SOCK_RAW, socket.htons(ETH_P_ALL))
        pcap: PcapFile | None = None
        ring: PacketMmap | None = None
        try:
            pcap = open_pcap(settings.pcap)
            ring = PacketMmap.create(
                settings.interface,
                sock,
                PacketMmapType.TX,
                settings.frame_size,
                settings.frame_nr,
            )
            tx = PacketTx(ring, pcap)
            thread = PacketThread(ThreadType.REPLAY)
            self._threads.start(thread, functools.partial(packet_tx, tx))
        except BaseException:
            if ring is not None:
                ring.destroy()
            if pcap is not None:
                pcap.close()
            sock.close()
            raise

        replay = Replay(thread, tx)
        self._add(replay)
        return replay

    def _release(self, replay: Replay) -> None:
        tx = replay.tx
        sock = tx.pkt_mmap.sock
        tx.pcap.close()
        tx.pkt_mmap.destroy()
        sock.close()

    def stop(self, thread_id: int) -> None:
        """Stop the replay run by ``thread_id`` and release its resources."""
        replay = self._find(thread_id)
        if replay is None:
            raise LookupError(f"no replay with thread id {thread_id}")
        self._threads.stop(replay.thread)
        self._replays.remove(replay)
        self._release(replay)

    def stop_all(self) -> None:
        """Stop every replay, in start order; the first failure is raised."""
        for replay in list(self._replays):
            self._threads.stop(replay.thread)
            self._replays.remove(replay)
            self._release(replay)

    def describe(self) -> list[dict[str, Any]]:
        """Report the settings of every running replay."""
        report = []
        for replay in self._replays:
            tx = replay.tx
            ring = tx.pkt_mmap
            pcap_path = ""
            if not tx.pcap.closed:
                with contextlib.suppress(OSError, ValueError):
                    pcap_path = fd_to_path(tx.pcap.fileno())
            interface = ""
            with contextlib.suppress(OSError):
                interface = socket.if_indextoname(ring.ifindex)
            report.append(
                {
                    "id": replay.id,
                    "interface": interface,
                    "pcap": pcap_path,
                    "frame_size": ring.layout.frame_size,
                    "frame_nr": ring.layout.frame_nr,
                    "status": 0,
                }
            )
        return report
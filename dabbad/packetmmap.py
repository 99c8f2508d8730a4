"""Memory-mapped packet rings shared with the kernel."""

from __future__ import annotations

import contextlib
import enum
import mmap
import socket
import struct
from dataclasses import dataclass, field

SOL_PACKET = getattr(socket, "SOL_PACKET", 263)
ETH_P_ALL = 0x0003

MIN_FRAME_SIZE = 128
MAX_FRAME_SIZE = 65536
FRAMES_PER_BLOCK = 8

_MAP_LOCKED = getattr(mmap, "MAP_LOCKED", 0x2000)
_TPACKET_REQ = struct.Struct("=IIII")


class PacketMmapType(enum.IntEnum):
    """Ring direction, as the socket option that registers it."""

    RX = 5
    TX = 13


def _is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def frame_size_is_valid(frame_size: int) -> bool:
    """Tell whether ``frame_size`` is a supported ring frame size."""
    return _is_power_of_two(frame_size) and MIN_FRAME_SIZE <= frame_size <= MAX_FRAME_SIZE


@dataclass(frozen=True)
class RingLayout:
    """Geometry of a packet ring (``struct tpacket_req``)."""

    block_size: int
    block_nr: int
    frame_size: int
    frame_nr: int

    @property
    def size(self) -> int:
        return self.block_size * self.block_nr

    def pack(self) -> bytes:
        return _TPACKET_REQ.pack(self.block_size, self.block_nr, self.frame_size, self.frame_nr)

    @classmethod
    def unpack(cls, data: bytes) -> RingLayout:
        return cls(*_TPACKET_REQ.unpack(data))


_EMPTY_LAYOUT = RingLayout(0, 0, 0, 0)


def ring_layout(frame_size: int, frame_nr: int) -> RingLayout:
    """Compute a ring of ``frame_nr`` frames grouped eight to a block."""
    if not _is_power_of_two(frame_size) or not _is_power_of_two(frame_nr):
        raise ValueError("frame size and frame count must be powers of two")
    block_nr = frame_nr // FRAMES_PER_BLOCK
    if block_nr == 0:
        raise ValueError(f"at least {FRAMES_PER_BLOCK} frames are needed")
    return RingLayout(FRAMES_PER_BLOCK * frame_size, block_nr, frame_size, frame_nr)


@dataclass(eq=False)
class PacketMmap:
    """A packet ring registered on a packet socket and mapped into memory."""

    sock: socket.socket
    mmap_type: PacketMmapType
    layout: RingLayout
    ifindex: int
    buf: mmap.mmap | None = None
    _frames: list[memoryview] = field(default_factory=list, init=False, repr=False)
    _view: memoryview | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(
        cls,
        device: str,
        sock: socket.socket,
        mmap_type: PacketMmapType,
        frame_size: int,
        frame_nr: int,
    ) -> PacketMmap:
        """Register, map and bind a ring on ``sock`` for interface ``device``."""
        layout = ring_layout(frame_size, frame_nr)
        ifindex = socket.if_nametoindex(device)
        ring = cls(sock, PacketMmapType(mmap_type), layout, ifindex)
        try:
            sock.setsockopt(SOL_PACKET, int(ring.mmap_type), layout.pack())
            ring.buf = mmap.mmap(
                sock.fileno(),
                layout.size,
                flags=mmap.MAP_SHARED | _MAP_LOCKED,
                prot=mmap.PROT_READ | mmap.PROT_WRITE,
            )
            ring.frames()
            sock.bind((device, ETH_P_ALL))
        except OSError:
            ring.destroy()
            raise
        return ring

    def frames(self) -> list[memoryview]:
        """Return one writable view per frame, in ring order."""
        if self.buf is None:
            raise ValueError("packet ring is not mapped")
        if not self._frames:
            self._view = memoryview(self.buf)
            size = self.layout.frame_size
            self._frames = [
                self._view[index * size : (index + 1) * size] for index in range(self.layout.frame_nr)
            ]
        return list(self._frames)

    def destroy(self) -> None:
        """Unmap the ring and unregister it from the socket."""
        for frame in self._frames:
            frame.release()
        self._frames = []
        if self._view is not None:
            self._view.release()
            self._view = None
        if self.buf is not None:
            self.buf.close()
            self.buf = None
        with contextlib.suppress(OSError):
            self.sock.setsockopt(SOL_PACKET, int(self.mmap_type), _EMPTY_LAYOUT.pack())
        self.layout = _EMPTY_LAYOUT
        self.ifindex = 0
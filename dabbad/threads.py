"""Packet worker threads: registry, scheduling and CPU affinity."""

from __future__ import annotations

import enum
import os
import re
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

_STOP_JOIN_TIMEOUT = 1.0
_NUMBER = re.compile(r"\s*(\d+)")


class ThreadType(enum.IntEnum):
    """What a packet thread is doing."""

    CAPTURE = 0
    REPLAY = 1


@dataclass(eq=False)
class PacketThread:
    """A packet worker thread; ``id`` is its native thread id once started."""

    type: ThreadType
    id: int | None = None
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def _tid(self) -> int:
        if self.id is None:
            raise ValueError("thread has not been started")
        return self.id

    def sched_param(self) -> tuple[int, int]:
        """Return the thread's ``(priority, policy)``."""
        tid = self._tid()
        policy = os.sched_getscheduler(tid)
        priority = os.sched_getparam(tid).sched_priority
        return priority, policy

    def set_sched_param(self, priority: int, policy: int) -> None:
        """Set the thread's scheduling policy and priority."""
        os.sched_setscheduler(self._tid(), policy, os.sched_param(priority))

    def affinity(self) -> set[int]:
        """Return the set of CPUs the thread may run on."""
        return set(os.sched_getaffinity(self._tid()))

    def set_affinity(self, cpus: set[int] | frozenset[int]) -> None:
        """Restrict the thread to the given CPUs."""
        os.sched_setaffinity(self._tid(), cpus)


class ThreadRegistry:
    """The set of running packet threads, in start order."""

    def __init__(self) -> None:
        self._threads: list[PacketThread] = []

    def __len__(self) -> int:
        return len(self._threads)

    def __iter__(self) -> Iterator[PacketThread]:
        return iter(list(self._threads))

    def start(self, pkt_thread: PacketThread, target: Callable[[threading.Event], Any]) -> None:
        """Run ``target(stop_event)`` in a new daemon thread and register it."""
        pkt_thread._stop.clear()
        worker = threading.Thread(target=target, args=(pkt_thread._stop,), daemon=True)
        worker.start()
        pkt_thread._thread = worker
        pkt_thread.id = worker.native_id
        self._threads.append(pkt_thread)

    def stop(self, pkt_thread: PacketThread) -> None:
        """Signal a registered thread to stop and remove it from the registry."""
        node = next((t for t in self._threads if t.id == pkt_thread.id), None)
        if node is None:
            raise LookupError(f"no running thread with id {pkt_thread.id}")
        node._stop.set()
        if node._thread is not None and node._thread is not threading.current_thread():
            node._thread.join(_STOP_JOIN_TIMEOUT)
        self._threads.remove(node)

    def find(self, thread_id: int) -> PacketThread | None:
        """Return the registered thread with this id, if any."""
        return next((t for t in self._threads if t.id == thread_id), None)

    def modify(
        self,
        thread_id: int,
        sched_policy: int | None = None,
        sched_priority: int | None = None,
        cpu_set: str | None = None,
    ) -> bool:
        """Change the scheduling of a thread; return False if it is not registered."""
        pkt_thread = self.find(thread_id)
        if pkt_thread is None:
            return False

        priority, policy = pkt_thread.sched_param()
        run_on = pkt_thread.affinity()

        if sched_policy is not None:
            policy = sched_policy
        if sched_priority is not None:
            priority = sched_priority
        if cpu_set is not None:
            run_on = parse_cpu_set(cpu_set)

        pkt_thread.set_sched_param(priority, policy)
        pkt_thread.set_affinity(run_on)
        return True

    def describe(self) -> list[dict[str, Any]]:
        """Report the settings of every registered thread."""
        report = []
        for pkt_thread in self._threads:
            entry: dict[str, Any] = {
                "id": pkt_thread.id,
                "type": pkt_thread.type,
                "sched_policy": 0,
                "sched_priority": 0,
                "cpu_set": "",
                "status": 0,
            }
            try:
                entry["sched_priority"], entry["sched_policy"] = pkt_thread.sched_param()
                entry["cpu_set"] = format_cpu_set(pkt_thread.affinity())
            except OSError as exc:
                entry["status"] = exc.errno or 0
            report.append(entry)
        return report


def thread_capabilities() -> list[dict[str, int]]:
    """Report the priority range of each supported scheduling policy."""
    capabilities = []
    for policy in (os.SCHED_FIFO, os.SCHED_RR, os.SCHED_OTHER):
        entry = {"policy": policy, "prio_min": -1, "prio_max": -1, "status": 0}
        try:
            entry["prio_min"] = os.sched_get_priority_min(policy)
        except OSError as exc:
            entry["status"] = exc.errno or 0
        try:
            entry["prio_max"] = os.sched_get_priority_max(policy)
        except OSError as exc:
            entry["status"] = exc.errno or 0
        capabilities.append(entry)
    return capabilities


def format_cpu_set(cpus: set[int] | frozenset[int]) -> str:
    """Render CPUs as a list such as ``0-3,5,7,8``; pairs are written ``a,b``."""
    ordered = sorted(cpus)
    parts: list[str] = []
    start = 0
    while start < len(ordered):
        end = start
        while end + 1 < len(ordered) and ordered[end + 1] == ordered[end] + 1:
            end += 1
        first, last = ordered[start], ordered[end]
        if first == last:
            parts.append(str(first))
        elif last == first + 1:
            parts.append(f"{first},{last}")
        else:
            parts.append(f"{first}-{last}")
        start = end + 1
    return ",".join(parts)


def _leading_number(text: str) -> int:
    match = _NUMBER.match(text)
    if match is None:
        raise ValueError(f"invalid CPU list entry {text!r}")
    return int(match.group(1))


def parse_cpu_set(text: str) -> set[int]:
    """Parse a CPU list such as ``0,2-4,8-14:2`` into a set of CPU numbers."""
    cpus: set[int] = set()
    for token in text.split(","):
        first = _leading_number(token)
        last, stride = first, 1
        _, dash, rest = token.partition("-")
        if dash:
            last = _leading_number(rest)
            _, colon, step = rest.partition(":")
            if colon:
                stride = _leading_number(step)
        if first > last:
            raise ValueError(f"invalid CPU range {token!r}")
        if stride <= 0:
            raise ValueError(f"invalid CPU stride {token!r}")
        cpus.update(range(first, last + 1, stride))
    return cpus
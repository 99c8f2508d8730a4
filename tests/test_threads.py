import os
import threading

import pytest

from dabbad.threads import (
    PacketThread,
    ThreadRegistry,
    ThreadType,
    format_cpu_set,
    parse_cpu_set,
    thread_capabilities,
)


def _wait_for_stop(stop: threading.Event) -> None:
    stop.wait()


@pytest.fixture
def registry():
    reg = ThreadRegistry()
    yield reg
    for pkt_thread in reg:
        reg.stop(pkt_thread)


def test_format_single_and_ranges():
    assert format_cpu_set({0, 1, 2, 5}) == "0-2,5"
    assert format_cpu_set({3, 4}) == "3,4"
    assert format_cpu_set(set()) == ""


@pytest.mark.parametrize("cpus", [{0}, {0, 1, 2, 3}, {1, 3, 5}, {0, 1, 4, 5, 6, 9}, {7, 8}])
def test_format_parse_round_trip(cpus):
    assert parse_cpu_set(format_cpu_set(cpus)) == cpus


def test_parse_stride():
    assert parse_cpu_set("8-14:2") == {8, 10, 12, 14}


def test_parse_mixed_list():
    assert parse_cpu_set("0,2-4") == {0, 2, 3, 4}


@pytest.mark.parametrize("text", ["", "a", "1,", "4-2", "1-x", "0-4:0"])
def test_parse_invalid(text):
    with pytest.raises(ValueError):
        parse_cpu_set(text)


def test_capabilities_policies_and_ranges():
    caps = thread_capabilities()
    assert [c["policy"] for c in caps] == [os.SCHED_FIFO, os.SCHED_RR, os.SCHED_OTHER]
    for entry in caps:
        assert entry["status"] == 0
        assert entry["prio_min"] <= entry["prio_max"]


def test_start_find_stop(registry):
    pkt_thread = PacketThread(ThreadType.CAPTURE)
    registry.start(pkt_thread, _wait_for_stop)
    assert len(registry) == 1
    assert registry.find(pkt_thread.id) is pkt_thread
    assert list(registry) == [pkt_thread]

    registry.stop(pkt_thread)
    assert len(registry) == 0
    assert registry.find(pkt_thread.id) is None
    assert not pkt_thread._thread.is_alive()


def test_stop_unknown_raises(registry):
    pkt_thread = PacketThread(ThreadType.REPLAY)
    with pytest.raises(LookupError):
        registry.stop(pkt_thread)


def test_stop_twice_raises(registry):
    pkt_thread = PacketThread(ThreadType.CAPTURE)
    registry.start(pkt_thread, _wait_for_stop)
    registry.stop(pkt_thread)
    with pytest.raises(LookupError):
        registry.stop(pkt_thread)


def test_modify_unknown_returns_false(registry):
    assert registry.modify(-1, cpu_set="0") is False


def test_modify_affinity_and_policy(registry):
    pkt_thread = PacketThread(ThreadType.CAPTURE)
    registry.start(pkt_thread, _wait_for_stop)
    cpu = min(os.sched_getaffinity(0))

    assert registry.modify(pkt_thread.id, os.SCHED_OTHER, 0, str(cpu)) is True
    assert pkt_thread.affinity() == {cpu}
    assert pkt_thread.sched_param() == (0, os.SCHED_OTHER)


def test_modify_bad_cpu_set_raises(registry):
    pkt_thread = PacketThread(ThreadType.CAPTURE)
    registry.start(pkt_thread, _wait_for_stop)
    with pytest.raises(ValueError):
        registry.modify(pkt_thread.id, cpu_set="5-1")


def test_describe_reports_each_thread(registry):
    first = PacketThread(ThreadType.CAPTURE)
    second = PacketThread(ThreadType.REPLAY)
    registry.start(first, _wait_for_stop)
    registry.start(second, _wait_for_stop)

    report = registry.describe()
    assert [entry["id"] for entry in report] == [first.id, second.id]
    assert [entry["type"] for entry in report] == [ThreadType.CAPTURE, ThreadType.REPLAY]
    for entry, pkt_thread in zip(report, (first, second)):
        assert entry["status"] == 0
        assert parse_cpu_set(entry["cpu_set"]) == pkt_thread.affinity()
        assert (entry["sched_priority"], entry["sched_policy"]) == pkt_thread.sched_param()


def test_unstarted_thread_has_no_sched_param():
    with pytest.raises(ValueError):
        PacketThread(ThreadType.CAPTURE).sched_param()
"""Tests for the human directive inbox."""

import threading

import pytest

from vigil.orchestrator.directives import MAX_DIRECTIVE_CHARS, DirectiveKind, HumanDirectiveQueue


def test_fifo_order():
    queue = HumanDirectiveQueue()
    first = queue.submit("check disks")
    second = queue.submit("check memory")
    assert queue.pending() == 2
    assert queue.next().id == first
    assert queue.next().id == second
    assert queue.next() is None


def test_blank_instruction_rejected():
    queue = HumanDirectiveQueue()
    with pytest.raises(ValueError):
        queue.submit("   ")
    assert queue.pending() == 0


def test_consolidate_kind_accepts_blank_text():
    queue = HumanDirectiveQueue()
    queue.submit("", "consolidate")
    assert queue.next().kind is DirectiveKind.CONSOLIDATE


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        HumanDirectiveQueue().submit("x", "reboot")


def test_long_text_truncated():
    queue = HumanDirectiveQueue()
    queue.submit("a" * (MAX_DIRECTIVE_CHARS + 10))
    assert len(queue.next().text) == MAX_DIRECTIVE_CHARS


def test_clear_reports_dropped():
    queue = HumanDirectiveQueue()
    queue.submit("one")
    queue.submit("two")
    assert queue.clear() == 2
    assert queue.pending() == 0


def test_submit_from_many_threads():
    queue = HumanDirectiveQueue()
    threads = [threading.Thread(target=queue.submit, args=(f"d{i}",)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert queue.pending() == 20

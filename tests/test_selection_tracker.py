"""Tests for SelectionTracker - deduplicated, read-once text selections."""

from __future__ import annotations

from typing import List

from src.paperchat.services.selection_tracker import Selection, SelectionTracker


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_repeated_selection_within_window_is_ignored() -> None:
    clock = ManualClock()
    seen: List[Selection] = []
    tracker = SelectionTracker(dedup_seconds=0.1, on_selection=seen.append, clock=clock)

    assert tracker.record_selection("same text", item_id=5) is True
    clock.now = 0.05
    assert tracker.record_selection("same text", item_id=5) is False
    clock.now = 0.5
    assert tracker.record_selection("same text", item_id=5) is True

    assert len(seen) == 2


def test_different_text_is_recorded_immediately() -> None:
    tracker = SelectionTracker(clock=ManualClock())

    tracker.record_selection("first")
    tracker.record_selection("second")

    assert tracker.peek() == Selection(text="second", item_id=0)


def test_blank_selection_is_ignored() -> None:
    tracker = SelectionTracker()

    assert tracker.record_selection("   ") is False
    assert tracker.peek() is None


def test_consume_is_read_once() -> None:
    tracker = SelectionTracker()
    tracker.record_selection("  quoted  ", item_id=3)

    assert tracker.consume() == Selection(text="quoted", item_id=3)
    assert tracker.consume() is None


def test_listener_failure_does_not_drop_selection() -> None:
    def broken(selection: Selection) -> None:
        raise RuntimeError("ui gone")

    tracker = SelectionTracker(on_selection=broken)

    assert tracker.record_selection("kept") is True
    assert tracker.peek().text == "kept"


def test_clear_discards_pending_selection() -> None:
    tracker = SelectionTracker()
    tracker.record_selection("text")

    tracker.clear()

    assert tracker.consume() is None

from __future__ import annotations

from mensa.engine.activity import ActivityTracker
from mensa.engine.switch import SwitchController


def test_set_active_notifies_listeners_in_order() -> None:
    switch = SwitchController()
    seen: list[tuple] = []
    switch.subscribe(lambda old, new: seen.append(("first", old, new)))
    switch.subscribe(lambda old, new: seen.append(("second", old, new)))

    assert switch.set_active("a") is True
    assert switch.set_active("b") is True
    assert seen == [
        ("first", None, "a"), ("second", None, "a"),
        ("first", "a", "b"), ("second", "a", "b"),
    ]


def test_set_active_same_id_is_a_no_op() -> None:
    switch = SwitchController("a")
    seen: list[tuple] = []
    switch.subscribe(lambda old, new: seen.append((old, new)))
    assert switch.set_active("a") is False
    assert seen == []


def test_unsubscribe_stops_notifications() -> None:
    switch = SwitchController()
    seen: list[tuple] = []
    unsubscribe = switch.subscribe(lambda old, new: seen.append((old, new)))
    unsubscribe()
    unsubscribe()
    switch.set_active("a")
    assert seen == []


def test_activity_counts_only_non_visible_threads() -> None:
    switch = SwitchController("a")
    tracker = ActivityTracker(switch)

    tracker.record("a")
    tracker.record("b")
    tracker.record("b", entries=2)
    assert tracker.count("a") == 0
    assert tracker.count("b") == 3
    assert tracker.snapshot() == {"b": 3}


def test_switching_to_a_thread_resets_its_counter() -> None:
    switch = SwitchController("a")
    tracker = ActivityTracker(switch)
    tracker.record("b", entries=5)

    switch.set_active("b")
    assert tracker.count("b") == 0
    assert tracker.snapshot() == {}

    tracker.record("a")
    assert tracker.snapshot() == {"a": 1}


def test_clearing_visibility_counts_every_thread() -> None:
    switch = SwitchController("a")
    tracker = ActivityTracker(switch)
    switch.set_active(None)
    tracker.record("a")
    assert tracker.count("a") == 1


def test_forget_and_non_positive_entries() -> None:
    tracker = ActivityTracker(SwitchController())
    tracker.record("x", entries=0)
    tracker.record("x", entries=-3)
    assert tracker.count("x") == 0
    tracker.record("x")
    tracker.forget("x")
    assert tracker.snapshot() == {}

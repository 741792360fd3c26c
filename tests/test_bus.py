from __future__ import annotations

import threading

import allure
import pytest

from transcoded.ipc.bus import EventBus, Subscriber

pytestmark = [
    allure.epic("IPC"),
    allure.feature("Event Bus"),
]


def _drain(subscriber: Subscriber) -> list[object]:
    items = []
    while (item := subscriber.get(timeout=0)) is not None:
        items.append(item)
    return items


def test_publish_reaches_every_subscriber_in_order() -> None:
    bus = EventBus(capacity=8)
    first = bus.attach(name="one")
    second = bus.attach(name="two")

    for index in range(3):
        bus.publish(index)

    assert _drain(first) == [0, 1, 2]
    assert _drain(second) == [0, 1, 2]
    assert bus.subscriber_count == 2


def test_first_item_precedes_later_events() -> None:
    bus = EventBus()
    bus.publish("before")
    subscriber = bus.attach(first="snapshot")
    bus.publish("after")

    assert _drain(subscriber) == ["snapshot", "after"]


def test_slow_subscriber_drops_oldest_events_but_keeps_responses() -> None:
    subscriber = Subscriber(capacity=2, name="slow")
    subscriber.put("snapshot")
    subscriber.offer("e1")
    subscriber.put("response")
    subscriber.offer("e2")
    subscriber.offer("e3")
    subscriber.offer("e4")

    assert subscriber.dropped == 2
    assert _drain(subscriber) == ["snapshot", "response", "e3", "e4"]


def test_detached_subscriber_stops_receiving_and_closes() -> None:
    bus = EventBus()
    subscriber = bus.attach()
    bus.detach(subscriber)
    bus.publish("late")

    assert subscriber.closed
    assert subscriber.get(timeout=1) is None
    assert bus.subscriber_count == 0


def test_close_wakes_blocked_reader_after_draining() -> None:
    subscriber = Subscriber(capacity=4)
    subscriber.offer("queued")
    subscriber.close()
    subscriber.offer("ignored")

    assert subscriber.get(timeout=1) == "queued"
    assert subscriber.get(timeout=1) is None


def test_get_blocks_until_item_arrives() -> None:
    subscriber = Subscriber(capacity=4)
    timer = threading.Timer(0.05, subscriber.offer, args=("late",))
    timer.start()
    try:
        assert subscriber.get(timeout=5) == "late"
    finally:
        timer.cancel()


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError, match="capacity"):
        Subscriber(capacity=0)

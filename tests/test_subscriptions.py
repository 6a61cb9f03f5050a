# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for status subscriptions and their shared poll loops."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from src.subscriptions import StatusSubscriptions, status_topic
from src.unifi_model import Device, DeviceKind

DEVICE = Device(id="dev1", mac="74:ac:b9:00:00:01", serial_number="SER001")
OTHER = Device(id="dev2", mac="74:ac:b9:00:00:02", serial_number="SER002")
INTERVAL = 0.01


class CountingFetch:
    """Poll fetch that returns an increasing counter per call."""

    def __init__(self, fail_on: set[int] | None = None):
        self.calls = 0
        self.fail_on = fail_on or set()
        self.seen: list[tuple[str, int, int]] = []

    async def __call__(self, device, kind, index):
        self.calls += 1
        self.seen.append((device.id, int(kind), index))
        if self.calls in self.fail_on:
            raise RuntimeError(f"poll {self.calls} failed")
        return self.calls


async def _wait_for(predicate, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def test_status_topic_format():
    assert status_topic(DEVICE, DeviceKind.OUTLET, 3) == "outlet.dev1.0.3"
    assert status_topic(DEVICE, DeviceKind.PORT, 7) == "outlet.dev1.1.7"


@pytest.mark.asyncio
async def test_first_subscriber_starts_polling():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, INTERVAL)
    received = []

    token = subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, received.append)
    topic = status_topic(DEVICE, DeviceKind.OUTLET, 1)
    assert token.startswith(topic + "#")
    assert subs.is_polling(topic)

    await _wait_for(lambda: len(received) >= 2)
    assert received[:2] == [1, 2]
    assert fetch.seen[0] == ("dev1", 0, 1)
    await subs.close()


@pytest.mark.asyncio
async def test_subscriber_isolation_and_lazy_stop():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, INTERVAL)
    topic = status_topic(DEVICE, DeviceKind.OUTLET, 1)
    first, second = [], []

    t1 = subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, first.append)
    t2 = subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, second.append)
    assert subs.count(topic) == 2
    assert len(subs._tasks) == 1

    await _wait_for(lambda: len(first) >= 2 and len(second) >= 2)
    # Both handlers see every value published while both are subscribed
    common = min(len(first), len(second))
    assert first[:common] == second[:common]

    subs.unsubscribe(t1)
    frozen = len(first)
    mark = len(second)
    await _wait_for(lambda: len(second) >= mark + 2)
    assert len(first) == frozen
    assert subs.is_polling(topic)

    subs.unsubscribe(t2)
    await _wait_for(lambda: not subs.is_polling(topic))
    calls = fetch.calls
    await asyncio.sleep(INTERVAL * 5)
    assert fetch.calls == calls
    assert subs.topics() == []


@pytest.mark.asyncio
async def test_resubscribe_wakes_sleeping_loop_without_overlap():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, 1.0)
    topic = status_topic(DEVICE, DeviceKind.PORT, 2)

    token = subs.subscribe(DEVICE, DeviceKind.PORT, 2, lambda v: None)
    await _wait_for(lambda: fetch.calls == 1)
    task = subs._tasks[topic]
    subs.unsubscribe(token)

    # Loop is sleeping and has not seen the unsubscribe yet
    received = []
    subs.subscribe(DEVICE, DeviceKind.PORT, 2, received.append)
    assert subs._tasks[topic] is task
    await _wait_for(lambda: len(received) >= 1, timeout=0.3)
    assert received == [2]
    assert subs._tasks[topic] is task
    await subs.close()


@pytest.mark.asyncio
async def test_reset_then_resubscribe_polls_immediately():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, 1.0)
    topic = status_topic(DEVICE, DeviceKind.OUTLET, 1)

    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, lambda v: None)
    await _wait_for(lambda: fetch.calls == 1)
    await asyncio.sleep(0.05)
    subs.reset()

    received = []
    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, received.append)
    await _wait_for(lambda: len(received) >= 1, timeout=0.3)
    assert fetch.calls == 2
    assert len(subs._tasks) == 1
    assert subs.is_polling(topic)
    await subs.close()


@pytest.mark.asyncio
async def test_second_subscriber_does_not_force_a_poll():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, 1.0)

    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, lambda v: None)
    await _wait_for(lambda: fetch.calls == 1)
    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, lambda v: None)
    await asyncio.sleep(0.1)
    assert fetch.calls == 1
    await subs.close()


@pytest.mark.asyncio
async def test_topics_are_independent():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, INTERVAL)
    a, b = [], []

    ta = subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, a.append)
    subs.subscribe(OTHER, DeviceKind.OUTLET, 1, b.append)
    assert len(subs.topics()) == 2

    subs.unsubscribe(ta)
    await _wait_for(lambda: not subs.is_polling(status_topic(DEVICE, DeviceKind.OUTLET, 1)))
    mark = len(b)
    await _wait_for(lambda: len(b) > mark)
    await subs.close()


@pytest.mark.asyncio
async def test_poll_error_is_logged_and_loop_continues(caplog):
    fetch = CountingFetch(fail_on={1})
    subs = StatusSubscriptions(fetch, INTERVAL)
    received = []

    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, received.append)
    await _wait_for(lambda: len(received) >= 1)

    assert received[0] == 2
    assert "An error occurred polling for a status update" in caplog.text
    assert subs.get_health()["poll_errors"] == 1
    await subs.close()


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, INTERVAL)
    received = []

    def broken(value):
        raise ValueError("handler bug")

    async def async_handler(value):
        received.append(value)

    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, broken)
    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, async_handler)
    await _wait_for(lambda: len(received) >= 2)
    await subs.close()


@pytest.mark.asyncio
async def test_unsubscribe_unknown_token_is_noop():
    subs = StatusSubscriptions(CountingFetch(), INTERVAL)
    subs.unsubscribe("outlet.nope.0.1#99")
    subs.unsubscribe("garbage")
    assert subs.topics() == []


@pytest.mark.asyncio
async def test_reset_stops_loops_on_next_tick():
    fetch = CountingFetch()
    subs = StatusSubscriptions(fetch, INTERVAL)
    topic = status_topic(DEVICE, DeviceKind.OUTLET, 1)

    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, lambda v: None)
    await _wait_for(lambda: fetch.calls >= 1)
    subs.reset()
    assert subs.count(topic) == 0
    await _wait_for(lambda: not subs.is_polling(topic))


@pytest.mark.asyncio
async def test_close_cancels_running_loops():
    gate = asyncio.Event()

    async def slow_fetch(device, kind, index):
        await gate.wait()
        return 1

    subs = StatusSubscriptions(slow_fetch, INTERVAL)
    subs.subscribe(DEVICE, DeviceKind.OUTLET, 1, lambda v: None)
    await asyncio.sleep(0)
    await subs.close()
    assert subs.get_health()["polling"] == 0

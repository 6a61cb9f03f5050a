# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Status subscriptions with one demand-driven poll loop per topic.

A topic is one (device, kind, index) combination. The first subscriber of a
topic starts a poll loop, which polls at once; the loop checks the subscriber
count at the top of every tick and exits once it is zero. Unsubscribing never
interrupts a tick in progress, it only keeps the next one from running. A new
first subscriber arriving while the old loop is still asleep wakes that loop
instead of starting a second one.

Every tick hands the fetched value to every current handler. Handlers keep
their own last-seen value and ignore repeats.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable

from .unifi_model import KIND_NAMES, Device, DeviceKind

logger = logging.getLogger(__name__)

PUB_SUB_OUTLET_TOPIC = "outlet"

StatusHandler = Callable[[Any], Awaitable[None] | None]
StatusFetch = Callable[[Device, DeviceKind, int], Awaitable[Any]]


def status_topic(device: Device, kind: DeviceKind, index: int) -> str:
    return f"{PUB_SUB_OUTLET_TOPIC}.{device.id}.{int(kind)}.{index}"


class StatusSubscriptions:
    def __init__(self, fetch: StatusFetch, interval: float):
        self._fetch = fetch
        self.interval = interval
        # topic -> {token: handler}, insertion ordered
        self._topics: dict[str, dict[str, StatusHandler]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # topic -> event that cuts a loop's sleep short
        self._wakeups: dict[str, asyncio.Event] = {}
        self._token_ids = itertools.count(1)

        # Poll health tracking
        self._poll_count = 0
        self._poll_errors = 0

    def count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def topics(self) -> list[str]:
        return [topic for topic, handlers in self._topics.items() if handlers]

    def is_polling(self, topic: str) -> bool:
        task = self._tasks.get(topic)
        return task is not None and not task.done()

    def subscribe(self, device: Device, kind: DeviceKind, index: int,
                  handler: StatusHandler) -> str:
        """Register *handler* for a topic and return its token."""
        topic = status_topic(device, kind, index)
        handlers = self._topics.setdefault(topic, {})
        token = f"{topic}#{next(self._token_ids)}"
        handlers[token] = handler
        logger.debug(
            "[API] Status subscription added for %s %s.%s [token=%s]",
            KIND_NAMES.get(kind, kind), device.mac, index, token,
        )

        # First subscriber gets an immediate poll: from a new loop, or by
        # waking a loop from an earlier subscription that is still alive
        if len(handlers) == 1:
            if self.is_polling(topic):
                self._wakeups[topic].set()
            else:
                wakeup = asyncio.Event()
                task = asyncio.get_running_loop().create_task(
                    self._poll_loop(topic, device, kind, index, wakeup),
                    name=f"poll-{topic}",
                )
                self._tasks[topic] = task
                self._wakeups[topic] = wakeup
                task.add_done_callback(lambda t, topic=topic: self._forget_task(topic, t))
        return token

    def unsubscribe(self, token: str) -> None:
        topic = token.rpartition("#")[0]
        handlers = self._topics.get(topic)
        if not handlers or handlers.pop(token, None) is None:
            logger.debug("[API] Unknown status subscription token %s", token)
            return
        if not handlers:
            del self._topics[topic]
        logger.debug("[API] Status subscription removed for token %s", token)

    def reset(self) -> None:
        """Drop every topic; running loops stop on their next tick."""
        self._topics.clear()

    async def close(self) -> None:
        """Drop every topic and cancel running loops."""
        self._topics.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget_task(self, topic: str, task: asyncio.Task) -> None:
        if self._tasks.get(topic) is task:
            del self._tasks[topic]
            self._wakeups.pop(topic, None)

    async def _poll_loop(self, topic: str, device: Device, kind: DeviceKind, index: int,
                         wakeup: asyncio.Event):
        while True:
            if self.count(topic) == 0:
                logger.debug("[API] There are no status subscriptions for %s; stopping poll", topic)
                return
            # A wakeup set during this tick makes the next one run at once
            wakeup.clear()
            try:
                logger.debug(
                    "[API] Polling status for %s %s.%s",
                    KIND_NAMES.get(kind, kind), device.mac, index,
                )
                value = await self._fetch(device, kind, index)
                self._poll_count += 1
                await self._publish(topic, value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._poll_errors += 1
                logger.error("[API] An error occurred polling for a status update; %s", e)
            try:
                await asyncio.wait_for(wakeup.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    async def _publish(self, topic: str, value: Any) -> None:
        for token, handler in list(self._topics.get(topic, {}).items()):
            try:
                result = handler(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[API] Status handler %s failed", token)

    def get_health(self) -> dict:
        return {
            "topics": len(self.topics()),
            "subscriptions": sum(len(h) for h in self._topics.values()),
            "polling": sum(1 for t in self._tasks.values() if not t.done()),
            "poll_count": self._poll_count,
            "poll_errors": self._poll_errors,
        }

# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Reentrant asyncio lock serializing every conversation with the controller.

asyncio.Lock is not reentrant, but a command holds the lock while it reads
current status through the same code path that display reads use. Ownership
is tracked per task, so the owning task may re-acquire and any other task
waits until the outermost release.
"""

import asyncio


class ReentrantLock:
    def __init__(self, name: str = ""):
        self.name = name
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0

    def locked(self) -> bool:
        return self._lock.locked()

    def owned(self) -> bool:
        """True when the current task holds the lock."""
        return self._owner is not None and self._owner is asyncio.current_task()

    @property
    def depth(self) -> int:
        return self._depth

    async def acquire(self) -> None:
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            return
        await self._lock.acquire()
        self._owner = task
        self._depth = 1

    def release(self) -> None:
        if not self.owned():
            raise RuntimeError(f"lock {self.name!r} released by a task that does not hold it")
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()

    async def __aenter__(self) -> "ReentrantLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
import time
from typing import Final, TypeVar

from daomerge.observability import log_event


LOGGER = logging.getLogger("daomerge.serializer")

# Every merge in the process shares this one section, whatever the target
# repository, to bound the outbound GitHub request rate.
MERGE_CRITICAL_SECTION: Final[str] = "merge"

T = TypeVar("T")


class ExecutionSerializer:
    """Named critical sections that admit one coroutine at a time, FIFO by arrival.

    Locks are created lazily per key and are bound to the running event loop, so a
    serializer must be used from a single loop. No timeout applies to a held
    section.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    async def run_exclusive(self, key: str, body: Callable[[], Awaitable[T]]) -> T:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        queued_at = time.monotonic()
        try:
            await lock.acquire()
        finally:
            self._waiting[key] -= 1
        try:
            log_event(
                LOGGER,
                "critical_section_entered",
                key=key,
                waited_ms=int((time.monotonic() - queued_at) * 1000),
                still_waiting=self._waiting[key],
            )
            return await body()
        finally:
            lock.release()
            log_event(LOGGER, "critical_section_released", key=key)

    def is_busy(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def waiting(self, key: str) -> int:
        return self._waiting.get(key, 0)

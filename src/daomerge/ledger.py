from __future__ import annotations

import logging
import threading
from typing import Protocol

from daomerge.models import PullRequestRef
from daomerge.observability import log_event


LOGGER = logging.getLogger("daomerge.ledger")


class DedupLedger(Protocol):
    def is_merged(self, ref: PullRequestRef) -> bool: ...

    def mark_merged(self, ref: PullRequestRef) -> None: ...


class InMemoryDedupLedger:
    """Process-lifetime record of pull requests this agent has merged.

    Only successful merges are written. A failed attempt leaves no entry, so a
    later authorization event for the same pull request is processed again.
    """

    def __init__(self) -> None:
        self._merged: dict[str, bool] = {}
        self._lock = threading.Lock()

    def is_merged(self, ref: PullRequestRef) -> bool:
        with self._lock:
            return self._merged.get(ref.dedup_key, False)

    def mark_merged(self, ref: PullRequestRef) -> None:
        key = ref.dedup_key
        with self._lock:
            already = self._merged.get(key, False)
            self._merged[key] = True
        if not already:
            log_event(LOGGER, "ledger_marked_merged", dedup_key=key)

    def merged_keys(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(key for key, merged in self._merged.items() if merged))

    def __len__(self) -> int:
        with self._lock:
            return len(self._merged)

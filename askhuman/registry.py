"""Registry of in-flight questions.

Each ask call registers its question id while it waits and removes it when it
returns. Removal is at-most-once: whichever of answer, timeout, shutdown or
the expiry sweep gets there first wins, and later removals are no-ops.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time

log = logging.getLogger("registry")


class PendingRegistry:
    def __init__(self) -> None:
        self._pending: dict[str, float] = {}
        self._lock = threading.Lock()

    def register(self, question_id: str) -> bool:
        """Start tracking question_id. Returns False if it is already tracked."""
        with self._lock:
            if question_id in self._pending:
                return False
            self._pending[question_id] = time.monotonic()
            return True

    def remove(self, question_id: str) -> bool:
        """Stop tracking question_id. Returns True only for the first removal."""
        with self._lock:
            return self._pending.pop(question_id, None) is not None

    def contains(self, question_id: str) -> bool:
        with self._lock:
            return question_id in self._pending

    def count(self) -> int:
        with self._lock:
            return len(self._pending)

    def snapshot(self) -> dict[str, float]:
        """Return {question_id: seconds waiting}."""
        now = time.monotonic()
        with self._lock:
            return {qid: now - started for qid, started in self._pending.items()}

    def sweep_expired(self, max_age_s: float) -> list[str]:
        cutoff = time.monotonic() - max_age_s
        with self._lock:
            expired = [qid for qid, started in self._pending.items() if started < cutoff]
            for qid in expired:
                del self._pending[qid]
        return expired


class RegistrySweeper:
    """Periodically drops entries whose wait loop never cleaned up."""

    def __init__(self, registry: PendingRegistry, *, max_age_s: float):
        self._registry = registry
        self._max_age_s = max_age_s
        self._task: asyncio.Task | None = None

    def sweep(self) -> list[str]:
        expired = self._registry.sweep_expired(self._max_age_s)
        if expired:
            log.info(f"Swept {len(expired)} expired question(s): {', '.join(expired)}")
        return expired

    async def _loop(self, *, interval_s: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval_s)
                self.sweep()
        except asyncio.CancelledError:
            return

    def start(self, *, interval_s: float) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(interval_s=interval_s))

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

# =============================================================================
# NATS Relay -- Fingerprint Deduplicator
# =============================================================================
#
# Suppresses repeat delivery of the same (subject, payload) inside a time
# bucket. The fingerprint set is cleared wholesale on a fixed interval, not
# aged per entry, so the effective suppression window is somewhere between
# `window` and `window + clear_interval`.
# =============================================================================

from __future__ import annotations

import asyncio
import math
import time

from typing import Any, Callable

from ._logging import logger
from .constants import DEDUP_CLEAR_INTERVAL, DEDUP_WINDOW
from .serialization import fingerprint_text


class FingerprintDeduplicator:
    """Content + time-bucket duplicate detection.

    Args:
        window: Width of the time bucket in seconds (default 2.0).
        clear_interval: Seconds between full clears of the set (default 10.0).
        clock: Wall-clock source, ``time.time`` by default.
    """

    def __init__(
        self,
        window: float = DEDUP_WINDOW,
        clear_interval: float = DEDUP_CLEAR_INTERVAL,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        if clear_interval <= 0:
            raise ValueError("clear_interval must be positive")

        self._window = window
        self._clear_interval = clear_interval
        self._clock = clock

        self._seen: set[str] = set()
        self._duplicates_detected = 0
        self._clears = 0
        self._clear_task: asyncio.Task[None] | None = None

    @property
    def window(self) -> float:
        return self._window

    @property
    def size(self) -> int:
        return len(self._seen)

    @property
    def running(self) -> bool:
        return self._clear_task is not None and not self._clear_task.done()

    def fingerprint(self, subject: str, payload: Any) -> str:
        bucket = math.floor(self._clock() / self._window)
        return f"{subject}:{fingerprint_text(payload)}:{bucket}"

    def is_duplicate(self, subject: str, payload: Any) -> bool:
        """Check if this event was already seen. Records it if new."""
        key = self.fingerprint(subject, payload)
        if key in self._seen:
            self._duplicates_detected += 1
            logger.debug("Duplicate event skipped: %s", subject)
            return True

        self._seen.add(key)
        return False

    def clear(self) -> None:
        self._seen.clear()
        self._clears += 1

    # -- Periodic clearing ----------------------------------------------------

    def start(self) -> None:
        """Start the periodic clear task on the running loop."""
        if self.running:
            return
        self._clear_task = asyncio.get_running_loop().create_task(self._clear_loop())

    async def stop(self) -> None:
        task = self._clear_task
        self._clear_task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _clear_loop(self) -> None:
        while True:
            await asyncio.sleep(self._clear_interval)
            self.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "fingerprints": len(self._seen),
            "duplicates_detected": self._duplicates_detected,
            "clears": self._clears,
            "window_seconds": self._window,
            "clear_interval_seconds": self._clear_interval,
        }

    def reset(self) -> None:
        self._seen.clear()
        self._duplicates_detected = 0
        self._clears = 0

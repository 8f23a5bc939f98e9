from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable


SUBMIT_LOCK_SECONDS = float(os.environ.get("SUBMIT_LOCK_SECONDS") or "3")
LOCK_LOGGER = logging.getLogger("device_rental.locks")


class SubmitLockedError(RuntimeError):
    def __init__(self, action: str, retry_after: float):
        super().__init__(f"A {action} request was just submitted. Please wait a moment.")
        self.action = action
        self.retry_after = retry_after


class SubmitLocks:
    """Cooldown per (action, caller) that suppresses accidental double submits.

    The lock is taken once a submission passes validation and expires on its own;
    it does not depend on the store round trip finishing.
    """

    def __init__(self, cooldown_seconds: float = SUBMIT_LOCK_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._locked_until: dict[tuple[str, str], float] = {}

    def _prune_unlocked(self, now_ts: float) -> None:
        for key, until in list(self._locked_until.items()):
            if until <= now_ts:
                self._locked_until.pop(key, None)

    def is_locked(self, action: str, caller: str) -> bool:
        now_ts = self._clock()
        with self._lock:
            self._prune_unlocked(now_ts)
            return (action, caller) in self._locked_until

    def acquire(self, action: str, caller: str) -> None:
        now_ts = self._clock()
        with self._lock:
            self._prune_unlocked(now_ts)
            until = self._locked_until.get((action, caller))
            if until is not None:
                retry_after = max(0.0, until - now_ts)
                LOCK_LOGGER.warning("Submit throttled action=%s caller=%s retry_after=%.1f", action, caller, retry_after)
                raise SubmitLockedError(action, retry_after)
            self._locked_until[(action, caller)] = now_ts + max(self.cooldown_seconds, 0.0)

    def release_all(self) -> None:
        with self._lock:
            self._locked_until.clear()

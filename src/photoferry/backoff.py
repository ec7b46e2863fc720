"""Shared per-identity pause signal for rate-limited remote endpoints."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Lock
import time
from typing import Callable, Optional

from photoferry.coordination import CancellationToken


logger = logging.getLogger(__name__)


@dataclass
class _Pause:
    until: float
    reason: Optional[str] = None


class BackoffController:
    """Lets one worker's rate-limit signal stall every worker of the same identity.

    A new pause only replaces an existing one if it ends later, so
    overlapping requests never shorten an active pause.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._pauses: dict[str, _Pause] = {}

    def pause(self, identity: str, seconds: float, reason: Optional[str] = None) -> None:
        if seconds <= 0:
            return
        until = self._clock() + seconds
        with self._lock:
            existing = self._pauses.get(identity)
            if existing and existing.until >= until:
                logger.debug(
                    "Existing pause for %s is longer than requested (%.2fs), keeping it",
                    identity,
                    seconds,
                )
                return
            self._pauses[identity] = _Pause(until=until, reason=reason)
        logger.info("Backoff pause set for %s: %.2fs (%s)", identity, seconds, reason or "unspecified")

    def remaining_pause(self, identity: str) -> float:
        """Seconds left on the identity's pause (0.0 when not paused)."""
        with self._lock:
            entry = self._pauses.get(identity)
            if entry is None:
                return 0.0
            remaining = entry.until - self._clock()
            if remaining <= 0:
                del self._pauses[identity]
                logger.info("Backoff pause ended for %s (%s)", identity, entry.reason or "unspecified")
                return 0.0
            return remaining

    def is_paused(self, identity: str) -> bool:
        return self.remaining_pause(identity) > 0

    def wait_while_paused(self, identity: str, token: Optional[CancellationToken] = None) -> None:
        """Block until no pause remains. Loops because a pause may be extended mid-wait.

        Returns early (without raising) when `token` is cancelled; callers
        check the token right after.
        """
        while True:
            remaining = self.remaining_pause(identity)
            if remaining <= 0:
                return
            if token is not None:
                if token.wait(remaining + 0.01):
                    return
            else:
                self._sleep(remaining + 0.01)

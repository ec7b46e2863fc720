"""Sliding-window upload throughput tracking."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
import time
from typing import Callable


BUCKET_SECONDS = 5.0
MAX_BUCKETS = 12  # one minute of history


@dataclass
class _Bucket:
    started: float
    count: int = 0
    size: int = 0


class UploadRateTracker:
    """Counts completed uploads in 5 second buckets over a one minute window."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = Lock()
        self._buckets: list[_Bucket] = []
        self.total_count = 0
        self.total_size = 0

    def add(self, size: int = 0) -> None:
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            current = self._buckets[-1] if self._buckets else None
            if current is None or now - current.started >= BUCKET_SECONDS:
                current = _Bucket(started=now)
                self._buckets.append(current)
            current.count += 1
            current.size += size or 0
            self.total_count += 1
            self.total_size += size or 0

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            count = sum(bucket.count for bucket in self._buckets)
            size = sum(bucket.size for bucket in self._buckets)
            duration = now - self._buckets[0].started if self._buckets else 0.0
            return {
                "items_per_second": count / duration if duration > 0 else 0.0,
                "bytes_per_second": size / duration if duration > 0 else 0.0,
                "total_uploaded_count": self.total_count,
                "total_uploaded_size": self.total_size,
                "is_tracking": bool(self._buckets),
            }

    def reset(self) -> None:
        with self._lock:
            self._buckets = []
            self.total_count = 0
            self.total_size = 0

    def _cleanup(self, now: float) -> None:
        cutoff = now - MAX_BUCKETS * BUCKET_SECONDS
        self._buckets = [bucket for bucket in self._buckets if bucket.started >= cutoff]

"""Per-identity run coordination: re-entrancy guard, stop flag and cancellation handle."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Optional

from photoferry.errors import OperationCancelled


class CancellationToken:
    """Cooperative cancellation handle shared by the workers of one run."""

    def __init__(self):
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; return True early if cancelled."""
        return self._event.wait(max(0.0, timeout))

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        if self._event.is_set():
            raise OperationCancelled(message)


@dataclass
class RunState:
    identity: str
    token: CancellationToken = field(default_factory=CancellationToken)
    stop_requested: bool = False
    tracking_id: Optional[str] = None

    def request_stop(self) -> None:
        self.stop_requested = True
        self.token.cancel()


class RunRegistry:
    """At most one active run per identity. Owned privately by each orchestrator."""

    def __init__(self):
        self._lock = Lock()
        self._runs: dict[str, RunState] = {}

    def begin(self, identity: str) -> Optional[RunState]:
        """Register a new run, or return None if one is already active."""
        with self._lock:
            if identity in self._runs:
                return None
            state = RunState(identity=identity)
            self._runs[identity] = state
            return state

    def end(self, state: RunState) -> None:
        with self._lock:
            if self._runs.get(state.identity) is state:
                del self._runs[state.identity]
        # Release anything still blocked on this run's handle.
        state.token.cancel()

    def get(self, identity: str) -> Optional[RunState]:
        with self._lock:
            return self._runs.get(identity)

    def is_active(self, identity: str) -> bool:
        with self._lock:
            return identity in self._runs

    def request_stop(self, identity: str) -> bool:
        with self._lock:
            state = self._runs.get(identity)
        if state is None:
            return False
        state.request_stop()
        return True

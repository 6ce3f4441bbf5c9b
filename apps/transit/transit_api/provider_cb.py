from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from prometheus_client import Counter


PROVIDER_CALLS = Counter(
    "transit_checkout_provider_calls_total",
    "Checkout provider calls",
    ["op", "result"],  # result: ok|err|skipped_cb_open
)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures; stays open for ``cooldown_secs``."""

    def __init__(self, op: str, threshold: int, cooldown_secs: int, enabled: bool = True) -> None:
        self.op = op
        self.threshold = max(1, int(threshold))
        self.cooldown = timedelta(seconds=max(1, int(cooldown_secs)))
        self.enabled = enabled
        self.fails = 0
        self.open_until: datetime | None = None
        self._lock = threading.Lock()

    def is_open(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return bool(self.enabled and self.open_until and now < self.open_until)

    def allowed(self) -> bool:
        with self._lock:
            if self.is_open():
                PROVIDER_CALLS.labels(self.op, "skipped_cb_open").inc()
                return False
            return True

    def record(self, ok: bool) -> None:
        with self._lock:
            if ok:
                self.fails = 0
                self.open_until = None
                PROVIDER_CALLS.labels(self.op, "ok").inc()
                return
            self.fails += 1
            PROVIDER_CALLS.labels(self.op, "err").inc()
            if self.enabled and self.fails >= self.threshold:
                self.open_until = datetime.now(timezone.utc) + self.cooldown

    def reset(self) -> None:
        with self._lock:
            self.fails = 0
            self.open_until = None

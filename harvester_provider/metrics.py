from collections import Counter
from threading import Lock


RECONCILE_COUNTERS = (
    "reconciles_total",
    "reconcile_errors_total",
    "reconcile_conflicts_total",
    "machines_created_total",
    "machines_ready_total",
    "machines_failed_total",
    "machines_deleted_total",
)


class Metrics:
    """Process-wide counters, exported as a flat JSON map on /metrics."""

    def __init__(self, known: tuple[str, ...] = ()) -> None:
        self._lock = Lock()
        self._known = known
        self._counters: Counter[str] = Counter({key: 0 for key in known})

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = Counter({key: 0 for key in self._known})


metrics = Metrics(RECONCILE_COUNTERS)

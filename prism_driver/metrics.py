from collections import Counter
from threading import Lock


def series(name: str, **labels: str) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{key}="{value}"' for key, value in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


class Metrics:
    """Process-local counters keyed by series name, labels included."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()

    def inc(self, name: str, amount: int = 1, **labels: str) -> None:
        key = series(name, **labels)
        with self._lock:
            self._counters[key] += amount

    def get(self, name: str, **labels: str) -> int:
        key = series(name, **labels)
        with self._lock:
            return self._counters[key]

    def operation(self, operation: str, ok: bool) -> None:
        self.inc("machine_operations_total", operation=operation, outcome="ok" if ok else "failed")

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))


metrics = Metrics()

from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Mapping

LabelKey = tuple[tuple[str, str], ...]


class MetricRegistry:
    """Process-local counters, rendered as `name{k=v,...}` keys on /metrics."""

    def __init__(self) -> None:
        self._counters: Counter[tuple[str, LabelKey]] = Counter()
        self._lock = Lock()

    @staticmethod
    def _labels(labels: Mapping[str, str] | None) -> LabelKey:
        return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        with self._lock:
            self._counters[(name, self._labels(labels))] += value

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get((name, self._labels(labels)), 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            items = list(self._counters.items())
        return {_render(name, labels): value for (name, labels), value in sorted(items)}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


def _render(name: str, labels: LabelKey) -> str:
    if not labels:
        return name
    return f"{name}{{{','.join(f'{k}={v}' for k, v in labels)}}}"


metrics = MetricRegistry()

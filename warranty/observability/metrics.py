from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Tuple, Any, Optional

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def _labels_tuple(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    min_value: float = field(default=float("inf"))
    max_value: float = field(default=float("-inf"))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)

    def snapshot(self) -> Dict[str, Any]:
        avg = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "avg": avg,
            "min": None if self.count == 0 else self.min_value,
            "max": None if self.count == 0 else self.max_value,
        }


_counter_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: list[Dict[str, Any]] = []
_max_events = 200


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    with _counter_lock:
        _counters[(name, _labels_tuple(labels))] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _counter_lock:
        _gauges[(name, _labels_tuple(labels))] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _counter_lock:
        key = (name, _labels_tuple(labels))
        histogram = _histograms.setdefault(key, Histogram())
        histogram.observe(value)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    event = {"name": name, "timestamp": time.time(), "payload": payload}
    with _counter_lock:
        _events.append(event)
        if len(_events) > _max_events:
            _events.pop(0)


def get_counter_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    """Sum of a counter across label sets, or one label set when given."""
    with _counter_lock:
        if labels is not None:
            return _counters.get((name, _labels_tuple(labels)), 0.0)
        return sum(value for (key, _), value in _counters.items() if key == name)


def get_metrics_snapshot() -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {"counters": {}, "gauges": {}, "histograms": {}}
    with _counter_lock:
        snapshot["events"] = list(_events)
        for (name, labels), value in _counters.items():
            snapshot["counters"].setdefault(name, []).append({"labels": dict(labels), "value": value})

        for (name, labels), value in _gauges.items():
            snapshot["gauges"].setdefault(name, []).append({"labels": dict(labels), "value": value})

        for (name, labels), histogram in _histograms.items():
            snapshot["histograms"].setdefault(name, []).append(
                {"labels": dict(labels), "stats": histogram.snapshot()}
            )

    return snapshot


def reset_metrics() -> None:
    """Testing helper."""
    with _counter_lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()


def get_gauge_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    with _counter_lock:
        return _gauges.get((name, _labels_tuple(labels)))


# Per-batch gauges are keyed by batch id and dropped once the run ends, so
# the snapshot only ever lists batches that are generating right now.
_BATCH_GAUGES = ("barcode_batch_progress_percent", "barcode_batch_generation_rate")


def track_batch_progress(batch_id: int, progress: int, rate: float) -> None:
    labels = {"batch_id": str(batch_id)}
    set_gauge("barcode_batch_progress_percent", float(progress), labels)
    set_gauge("barcode_batch_generation_rate", float(rate or 0.0), labels)


def clear_batch_progress(batch_id: int) -> None:
    labels = _labels_tuple({"batch_id": str(batch_id)})
    with _counter_lock:
        for name in _BATCH_GAUGES:
            _gauges.pop((name, labels), None)

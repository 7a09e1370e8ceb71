"""
Metrics collection for the royalty engine.

Counters, gauges and millisecond histograms keyed by name plus an optional
label set. Everything is served as JSON at /metrics/json and in Prometheus
text format at /metrics.

Engine metrics:
- claims_processed, claims_failed, claim_duration_ms
- notifications_sent, notifications_rate_limited, channel_delivery_failures
- detection_events, detection_cache_hits, detection_ticks_skipped
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

CLAIMS_PROCESSED = "claims_processed"
CLAIMS_FAILED = "claims_failed"
CLAIM_DURATION_MS = "claim_duration_ms"
NOTIFICATIONS_SENT = "notifications_sent"
NOTIFICATIONS_RATE_LIMITED = "notifications_rate_limited"
CHANNEL_DELIVERY_FAILURES = "channel_delivery_failures"
DETECTION_EVENTS = "detection_events"
DETECTION_CACHE_HITS = "detection_cache_hits"
DETECTION_TICKS_SKIPPED = "detection_ticks_skipped"

DEFAULT_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)

Labels = dict[str, str] | None


def label_string(labels: Labels) -> str:
    """Prometheus label body, e.g. ``code="RATE_LIMITED",tier="free"``."""
    return ",".join(f'{k}="{v}"' for k, v in sorted((labels or {}).items()))


@dataclass
class Histogram:
    """Cumulative buckets; ``counts[-1]`` is the +Inf bucket."""

    bounds: tuple[float, ...] = DEFAULT_BUCKETS_MS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        self.counts = self.counts or [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.count += 1
        self.sum += value
        first = next((i for i, b in enumerate(self.bounds) if value <= b), len(self.bounds))
        for i in range(first, len(self.counts)):
            self.counts[i] += 1

    @property
    def bucket_labels(self) -> list[str]:
        return [str(b) for b in self.bounds] + ["+Inf"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": round(self.sum, 3),
            "avg": self.sum / self.count if self.count else 0,
            "buckets": dict(zip(self.bucket_labels, self.counts)),
        }


class MetricsCollector:
    """
    Process-wide metric registry, safe to update from request threads,
    the scheduler and the claim transfer pool at once.
    """

    def __init__(self, prefix: str = "royalty"):
        self.prefix = prefix
        self._lock = threading.RLock()
        self.reset()

    def _series(self, family: dict, name: str) -> dict:
        return family.setdefault(name, {})

    def increment(self, name: str, value: int = 1, labels: Labels = None) -> None:
        with self._lock:
            series = self._series(self._counters, name)
            key = label_string(labels)
            series[key] = series.get(key, 0) + value

    def get_counter(self, name: str, labels: Labels = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(label_string(labels), 0)

    def counter_total(self, name: str) -> int:
        """Sum over every label set of the counter."""
        with self._lock:
            return sum(self._counters.get(name, {}).values())

    def set_gauge(self, name: str, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._series(self._gauges, name)[label_string(labels)] = value

    def get_gauge(self, name: str, labels: Labels = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(label_string(labels), 0.0)

    def timing(self, name: str, value_ms: float, labels: Labels = None) -> None:
        with self._lock:
            series = self._series(self._histograms, name)
            series.setdefault(label_string(labels), Histogram()).observe(value_ms)

    def get_histogram(self, name: str, labels: Labels = None) -> Histogram | None:
        with self._lock:
            return self._histograms.get(name, {}).get(label_string(labels))

    @contextmanager
    def timer(self, name: str, labels: Labels = None):
        """Record the block's wall time in milliseconds under ``name``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - started) * 1000, labels)

    def uptime(self) -> float:
        return time.time() - self._started_at

    def get_all(self) -> dict[str, Any]:
        """Snapshot as a dict. A series with no labels is reported as a bare value."""

        def flatten(series: dict[str, Any]) -> Any:
            return series[""] if list(series) == [""] else dict(series)

        with self._lock:
            return {
                "uptime_seconds": self.uptime(),
                "counters": {name: flatten(s) for name, s in self._counters.items()},
                "gauges": {name: flatten(s) for name, s in self._gauges.items()},
                "histograms": {
                    name: {(key or "_total"): h.to_dict() for key, h in s.items()}
                    for name, s in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Prometheus text exposition of every series."""

        def sample(metric: str, labels: str, value: Any) -> str:
            return f"{metric}{{{labels}}} {value}" if labels else f"{metric} {value}"

        def join(*parts: str) -> str:
            return ",".join(p for p in parts if p)

        with self._lock:
            uptime_metric = f"{self.prefix}_uptime_seconds"
            out = [f"# TYPE {uptime_metric} gauge", f"{uptime_metric} {self.uptime():.2f}", ""]

            for kind, family in (("counter", self._counters), ("gauge", self._gauges)):
                for name, series in family.items():
                    metric = f"{self.prefix}_{name}"
                    out.append(f"# TYPE {metric} {kind}")
                    out.extend(sample(metric, key, value) for key, value in series.items())
                    out.append("")

            for name, series in self._histograms.items():
                metric = f"{self.prefix}_{name}"
                out.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    for bound, count in zip(hist.bucket_labels, hist.counts):
                        out.append(sample(f"{metric}_bucket", join(key, f'le="{bound}"'), count))
                    out.append(sample(f"{metric}_sum", key, f"{hist.sum:.2f}"))
                    out.append(sample(f"{metric}_count", key, hist.count))
                out.append("")

        return "\n".join(out)

    def reset(self) -> None:
        """Drop every series and restart the uptime clock."""
        with self._lock:
            self._counters: dict[str, dict[str, int]] = {}
            self._gauges: dict[str, dict[str, float]] = {}
            self._histograms: dict[str, dict[str, Histogram]] = {}
            self._started_at = time.time()


metrics = MetricsCollector()

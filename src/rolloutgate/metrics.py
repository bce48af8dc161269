"""Prometheus metrics for RolloutGate.

Metrics are exposed at the /metrics endpoint in Prometheus text format.

Metrics collected:
    - rolloutgate_rollouts_started_total: Rollouts accepted, by strategy
    - rolloutgate_transitions_total: Controller transitions, by resulting status
    - rolloutgate_active_rollouts: Gauge of non-terminal rollouts
    - rolloutgate_traffic_shift_retries_total: Retried traffic shifts, by target
    - rolloutgate_rollbacks_total: Rollback outcomes (rolled_back / rollback_failed)
    - rolloutgate_phase_duration_seconds: Time spent in each phase before it ended
    - rolloutgate_health_status: Dependency health (1=healthy, 0=unhealthy)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

LabelKey = tuple[str, ...]


def _label_string(names: tuple[str, ...], values: LabelKey, extra: str = "") -> str:
    pairs = [f'{name}="{value}"' for name, value in zip(names, values, strict=False)]
    if extra:
        pairs.append(extra)
    return ",".join(pairs)


@dataclass
class _ScalarMetric:
    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[LabelKey, float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    kind = "untyped"

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def _add(self, label_values: LabelKey, amount: float) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} {self.kind}",
        ]
        with self._lock:
            if not self._values:
                lines.append(f"{self.name} 0")
            for label_values, value in sorted(self._values.items()):
                if self.labels and label_values:
                    lines.append(
                        f"{self.name}{{{_label_string(self.labels, label_values)}}} {value}"
                    )
                else:
                    lines.append(f"{self.name} {value}")
        return "\n".join(lines)


@dataclass
class Counter(_ScalarMetric):
    """Thread-safe counter metric."""

    kind = "counter"

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only increase")
        self._add(label_values, amount)


@dataclass
class Gauge(_ScalarMetric):
    """Thread-safe gauge metric."""

    kind = "gauge"

    def set(self, value: float, *label_values: str) -> None:
        with self._lock:
            self._values[label_values] = value

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        self._add(label_values, amount)

    def dec(self, *label_values: str, amount: float = 1.0) -> None:
        self._add(label_values, -amount)


@dataclass
class Histogram:
    """Thread-safe histogram metric with configurable buckets."""

    name: str
    description: str
    buckets: tuple[float, ...] = (1.0, 10.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0)
    labels: tuple[str, ...] = ()
    _bucket_counts: dict[LabelKey, dict[float, int]] = field(default_factory=dict)
    _sums: dict[LabelKey, float] = field(default_factory=dict)
    _counts: dict[LabelKey, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def observe(self, value: float, *label_values: str) -> None:
        with self._lock:
            counts = self._bucket_counts.setdefault(label_values, dict.fromkeys(self.buckets, 0))
            for bucket in self.buckets:
                if value <= bucket:
                    counts[bucket] += 1
            self._sums[label_values] = self._sums.get(label_values, 0.0) + value
            self._counts[label_values] = self._counts.get(label_values, 0) + 1

    def count(self, *label_values: str) -> int:
        with self._lock:
            return self._counts.get(label_values, 0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} histogram",
        ]
        with self._lock:
            for label_values in sorted(self._bucket_counts):
                # Bucket counts are already cumulative: observe() fills every bucket >= value.
                bucket_counts = self._bucket_counts[label_values]
                for bucket in sorted(self.buckets):
                    labels = _label_string(self.labels, label_values, f'le="{bucket}"')
                    lines.append(f"{self.name}_bucket{{{labels}}} {bucket_counts[bucket]}")
                count = self._counts.get(label_values, 0)
                labels = _label_string(self.labels, label_values, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{{{labels}}} {count}")
                plain = _label_string(self.labels, label_values)
                lines.append(f"{self.name}_sum{{{plain}}} {self._sums.get(label_values, 0.0)}")
                lines.append(f"{self.name}_count{{{plain}}} {count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Registry for all RolloutGate metrics."""

    def __init__(self) -> None:
        self.rollouts_started_total = Counter(
            name="rolloutgate_rollouts_started_total",
            description="Total number of rollouts accepted",
            labels=("strategy",),
        )
        self.transitions_total = Counter(
            name="rolloutgate_transitions_total",
            description="Total number of rollout state transitions",
            labels=("status",),
        )
        self.active_rollouts = Gauge(
            name="rolloutgate_active_rollouts",
            description="Number of non-terminal rollouts",
        )
        self.traffic_shift_retries_total = Counter(
            name="rolloutgate_traffic_shift_retries_total",
            description="Total number of retried traffic shift requests",
            labels=("target",),
        )
        self.rollbacks_total = Counter(
            name="rolloutgate_rollbacks_total",
            description="Total number of rollbacks by outcome",
            labels=("outcome",),
        )
        self.phase_duration_seconds = Histogram(
            name="rolloutgate_phase_duration_seconds",
            description="Seconds spent in a phase before leaving it",
            labels=("strategy",),
        )
        self.health_status = Gauge(
            name="rolloutgate_health_status",
            description="Health status of dependencies (1=healthy, 0=unhealthy)",
            labels=("dependency",),
        )

    def collect_all(self) -> str:
        """Collect all metrics in Prometheus format."""
        metrics = [
            self.rollouts_started_total.collect(),
            self.transitions_total.collect(),
            self.active_rollouts.collect(),
            self.traffic_shift_retries_total.collect(),
            self.rollbacks_total.collect(),
            self.phase_duration_seconds.collect(),
            self.health_status.collect(),
        ]
        return "\n\n".join(metrics) + "\n"


# Global metrics registry
metrics = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Return the global metrics registry."""
    return metrics

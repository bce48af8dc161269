"""Health signal collection and window evaluation against advance criteria."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from math import ceil
from threading import Lock
from typing import Any, Literal, Protocol

import httpx

from rolloutgate.logging import get_logger
from rolloutgate.models import Criteria, HealthSample, Threshold

logger = get_logger(__name__)

Verdict = Literal["pass", "violated", "unknown"]


class HealthCollector(Protocol):
    """Boundary to the external health signal source."""

    async def sample(self, target: str, window: timedelta) -> HealthSample | None:
        """Return a sample covering the last ``window``, or None for a gap."""
        ...


def _p95(values: list[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = ceil(0.95 * len(ordered)) - 1
    index = max(0, min(index, len(ordered) - 1))
    return ordered[index]


def aggregate(values: Sequence[float], how: str) -> float:
    """Fold window values with the threshold's aggregation."""
    if not values:
        raise ValueError("cannot aggregate an empty window")
    if how == "max":
        return max(values)
    if how == "min":
        return min(values)
    if how == "p95":
        return _p95(list(values))
    return sum(values) / len(values)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None
    sample_count: int

    @property
    def verdict(self) -> Verdict:
        if self.observed is None:
            return "unknown"
        return "pass" if self.threshold.holds(self.observed) else "violated"

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.threshold.name,
            "metric": self.threshold.metric,
            "aggregate": self.threshold.aggregate,
            "op": self.threshold.op,
            "threshold": self.threshold.value,
            "observed": self.observed,
            "samples": self.sample_count,
            "verdict": self.verdict,
        }


@dataclass(frozen=True)
class CriteriaVerdict:
    """Result of evaluating a criteria set over a health window."""

    criteria_name: str
    outcome: Verdict
    results: tuple[ThresholdResult, ...]
    sample_count: int

    @property
    def violations(self) -> tuple[ThresholdResult, ...]:
        return tuple(result for result in self.results if result.verdict == "violated")

    def rationale(self) -> str:
        if self.outcome == "violated":
            parts = [
                f"{result.threshold.name}: observed {result.observed:g} "
                f"violates {result.threshold.describe()}"
                for result in self.violations
                if result.observed is not None
            ]
            return f"criteria '{self.criteria_name}' violated ({'; '.join(parts)})"
        if self.outcome == "unknown":
            missing = [
                result.threshold.name for result in self.results if result.observed is None
            ]
            if not missing:
                return f"criteria '{self.criteria_name}' has no samples"
            return f"criteria '{self.criteria_name}' missing data for {', '.join(missing)}"
        if not self.results:
            return "no advance criteria"
        return (
            f"criteria '{self.criteria_name}' held over {self.sample_count} sample(s)"
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "criteria": self.criteria_name,
            "outcome": self.outcome,
            "samples": self.sample_count,
            "thresholds": [result.to_payload() for result in self.results],
        }


def evaluate_criteria(criteria: Criteria, samples: Sequence[HealthSample]) -> CriteriaVerdict:
    """Evaluate every threshold against the aggregated window.

    A violation of any threshold wins over missing data; missing data wins
    over a pass. Empty criteria always pass.
    """
    results: list[ThresholdResult] = []
    for threshold in criteria.thresholds:
        values = [
            value
            for value in (sample.metric(threshold.metric) for sample in samples)
            if value is not None
        ]
        observed = aggregate(values, threshold.aggregate) if values else None
        results.append(
            ThresholdResult(threshold=threshold, observed=observed, sample_count=len(values))
        )

    verdicts = {result.verdict for result in results}
    outcome: Verdict
    if "violated" in verdicts:
        outcome = "violated"
    elif "unknown" in verdicts or (results and not samples):
        outcome = "unknown"
    else:
        outcome = "pass"
    return CriteriaVerdict(
        criteria_name=criteria.name,
        outcome=outcome,
        results=tuple(results),
        sample_count=len(samples),
    )


def evaluate_sample(criteria: Criteria, sample: HealthSample) -> CriteriaVerdict:
    """Check one sample against every threshold on its own.

    A single breaching sample is a violation however healthy the rest of
    the window is; the window aggregate only decides advancing.
    """
    return evaluate_criteria(criteria, (sample,))


def merge_samples(target: str, samples: Iterable[HealthSample]) -> HealthSample | None:
    """Collapse several samples into one covering their combined window."""
    collected = list(samples)
    if not collected:
        return None
    if len(collected) == 1:
        return collected[0]

    def _values(name: str) -> list[float]:
        values = (sample.metric(name) for sample in collected)
        return [value for value in values if value is not None]

    total_requests = sum(sample.request_count for sample in collected)
    error_rate: float | None = None
    weighted = [
        (sample.error_rate, sample.request_count)
        for sample in collected
        if sample.error_rate is not None
    ]
    if weighted:
        weight = sum(count for _, count in weighted)
        if weight > 0:
            error_rate = sum(rate * count for rate, count in weighted) / weight
        else:
            error_rate = sum(rate for rate, _ in weighted) / len(weighted)

    latencies = _values("latency_p95_ms")
    cpu = _values("cpu_utilization")
    memory = _values("memory_utilization")
    business: dict[str, list[float]] = {}
    for sample in collected:
        for key, value in sample.business_metrics.items():
            business.setdefault(key, []).append(value)

    return HealthSample(
        target=target,
        timestamp=max(sample.timestamp for sample in collected),
        request_count=total_requests,
        error_rate=error_rate,
        latency_p95_ms=max(latencies) if latencies else None,
        cpu_utilization=max(cpu) if cpu else None,
        memory_utilization=max(memory) if memory else None,
        business_metrics={key: sum(values) / len(values) for key, values in business.items()},
    )


class PushHealthCollector:
    """In-process collector fed by pushed samples (HTTP API or agents).

    The controller drains pushed samples one at a time so each is checked on
    its own. ``sample`` merges whatever is buffered into one sample for
    single-shot readers such as rollback verification.
    """

    def __init__(self, *, max_buffered: int = 1000) -> None:
        self.max_buffered = max(1, max_buffered)
        self._buffers: dict[str, deque[HealthSample]] = {}
        self._lock = Lock()

    def push(self, sample: HealthSample) -> None:
        with self._lock:
            buffer = self._buffers.setdefault(sample.target, deque(maxlen=self.max_buffered))
            buffer.append(sample)

    def pending(self, target: str) -> int:
        with self._lock:
            return len(self._buffers.get(target, ()))

    def discard(self, target: str) -> int:
        """Drop everything buffered for a target; return how many samples went."""
        with self._lock:
            buffer = self._buffers.pop(target, None)
        return len(buffer) if buffer else 0

    def drain(self, target: str) -> list[HealthSample]:
        """Take every sample pushed for a target since the last drain, oldest first."""
        with self._lock:
            buffer = self._buffers.get(target)
            if not buffer:
                return []
            drained = list(buffer)
            buffer.clear()
        return drained

    async def sample(self, target: str, window: timedelta) -> HealthSample | None:
        return merge_samples(target, self.drain(target))


class HTTPHealthCollector:
    """Poll an external health API: GET /targets/{target}/health?window_seconds=N.

    Transport errors and empty responses are reported as gaps, which the
    controller's insufficient-data rule turns into a rollback if they last.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def sample(self, target: str, window: timedelta) -> HealthSample | None:
        try:
            response = await self._client.get(
                f"/targets/{target}/health",
                params={"window_seconds": max(1, int(window.total_seconds()))},
            )
            if response.status_code == 204 or not response.content:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("health_sample_failed", target=target, error=str(exc))
            return None
        if not isinstance(payload, dict):
            logger.warning("health_sample_malformed", target=target)
            return None
        payload.setdefault("target", target)
        try:
            return HealthSample.model_validate(payload)
        except ValueError as exc:
            logger.warning("health_sample_invalid", target=target, error=str(exc))
            return None

    async def aclose(self) -> None:
        await self._client.aclose()

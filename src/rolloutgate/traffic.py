"""Traffic control adapters: shift a target's traffic onto the new version."""

from __future__ import annotations

from threading import Lock
from typing import Any, Protocol

import httpx

from rolloutgate.errors import TrafficShiftError
from rolloutgate.logging import get_logger

logger = get_logger(__name__)


class TrafficControl(Protocol):
    """Boundary to the external traffic router.

    ``shift`` must be idempotent: re-issuing the current fraction succeeds
    without side effects.
    """

    async def shift(self, target: str, fraction: float) -> None:
        """Route ``fraction`` percent of the target's traffic to the new version."""
        ...

    async def current_fraction(self, target: str) -> float:
        """Return the percent of traffic currently on the new version."""
        ...


class InMemoryTrafficRouter:
    """Process-local router that records weights per target."""

    def __init__(self) -> None:
        self._weights: dict[str, float] = {}
        self._history: dict[str, list[float]] = {}
        self._lock = Lock()

    async def shift(self, target: str, fraction: float) -> None:
        if fraction < 0.0 or fraction > 100.0:
            raise TrafficShiftError(target, fraction, "fraction must be within [0, 100]")
        with self._lock:
            if self._weights.get(target) == fraction:
                return
            self._weights[target] = fraction
            self._history.setdefault(target, []).append(fraction)
        logger.info("traffic_shifted", target=target, fraction=fraction)

    async def current_fraction(self, target: str) -> float:
        with self._lock:
            return self._weights.get(target, 0.0)

    def history(self, target: str) -> list[float]:
        with self._lock:
            return list(self._history.get(target, []))


class HTTPTrafficControl:
    """Drive an external router: PUT/GET /targets/{target}/traffic."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def shift(self, target: str, fraction: float) -> None:
        try:
            response = await self._client.put(
                f"/targets/{target}/traffic",
                json={"fraction": fraction},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TrafficShiftError(
                target, fraction, f"router returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TrafficShiftError(target, fraction, str(exc) or type(exc).__name__) from exc

    async def current_fraction(self, target: str) -> float:
        try:
            response = await self._client.get(f"/targets/{target}/traffic")
            response.raise_for_status()
            payload: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TrafficShiftError(target, -1.0, f"cannot read traffic state: {exc}") from exc
        if not isinstance(payload, dict) or "fraction" not in payload:
            raise TrafficShiftError(target, -1.0, "router response missing fraction")
        return float(payload["fraction"])

    async def aclose(self) -> None:
        await self._client.aclose()

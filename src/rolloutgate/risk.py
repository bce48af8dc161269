"""Risk assessor boundary and adapters.

How a score is computed is out of scope here: the assessor is an external
collaborator and the rollout path only consumes its final score.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from rolloutgate.errors import AssessmentUnavailable
from rolloutgate.logging import get_logger
from rolloutgate.models import ChangeDescriptor, RiskAssessment

logger = get_logger(__name__)


class RiskAssessor(Protocol):
    async def assess(
        self, change: ChangeDescriptor, environment: dict[str, Any]
    ) -> RiskAssessment:
        """Score a change; raise AssessmentUnavailable when no score can be produced."""
        ...


class StaticRiskAssessor:
    """Assessor that reads the score from the change itself.

    Uses ``change.attributes["risk_score"]`` when present, else ``default_score``.
    Without either, the assessment is unavailable.
    """

    def __init__(self, default_score: float | None = None) -> None:
        self.default_score = default_score

    async def assess(
        self, change: ChangeDescriptor, environment: dict[str, Any]
    ) -> RiskAssessment:
        raw = change.attributes.get("risk_score", self.default_score)
        if raw is None:
            raise AssessmentUnavailable(
                f"no risk score supplied for change {change.change_id!r}"
            )
        try:
            score = float(raw)
        except (TypeError, ValueError) as exc:
            raise AssessmentUnavailable(f"risk score {raw!r} is not numeric") from exc
        factors = {
            str(key): float(value)
            for key, value in change.attributes.get("risk_factors", {}).items()
        }
        return RiskAssessment(score=score, factors=factors)


class HTTPRiskAssessor:
    """Ask an external scoring service: POST /assess."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def assess(
        self, change: ChangeDescriptor, environment: dict[str, Any]
    ) -> RiskAssessment:
        try:
            response = await self._client.post(
                "/assess",
                json={"change": change.model_dump(mode="json"), "environment": environment},
            )
            response.raise_for_status()
            return RiskAssessment.model_validate(response.json())
        except httpx.HTTPError as exc:
            logger.warning("risk_assessment_failed", change_id=change.change_id, error=str(exc))
            raise AssessmentUnavailable(f"risk assessor unreachable: {exc}") from exc
        except ValueError as exc:
            logger.warning("risk_assessment_invalid", change_id=change.change_id, error=str(exc))
            raise AssessmentUnavailable(f"risk assessor returned invalid payload: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

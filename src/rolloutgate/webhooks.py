"""Webhook notifications for rollout outcomes.

Supported event types:
    - rollout.succeeded: Rollout reached 100% and passed its last phase
    - rollout.rolled_back: Rollout aborted and traffic verified back on the prior version
    - rollout.failed: Rollout halted without rollback (denied under halt policy,
      or aborted before any traffic moved)
    - rollout.rollback_failed: Rollback itself failed; manual intervention required
    - rollout.awaiting_approval: A staged phase is waiting for sign-off
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from rolloutgate.logging import get_logger

logger = get_logger(__name__)


@dataclass
class WebhookEvent:
    """Webhook event payload."""

    event_type: str
    timestamp: str
    payload: dict[str, Any]
    source: str = "rolloutgate"
    version: str = "1.0.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "source": self.source,
            "version": self.version,
            "payload": self.payload,
        }


class WebhookNotifier:
    """Send webhooks on rollout outcomes.

    Delivery failures are logged and never fail the rollout that triggered
    them. Payloads are HMAC-SHA256 signed when a secret is configured.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        secret: str | None = None,
        timeout: float = 5.0,
        max_retries: int = 3,
    ) -> None:
        self.webhook_url = webhook_url
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

    @property
    def enabled(self) -> bool:
        """Return True if webhooks are configured."""
        return bool(self.webhook_url)

    def _sign(self, event: WebhookEvent) -> str | None:
        if not self.secret:
            return None
        body = json.dumps(event.to_dict(), sort_keys=True)
        digest = hmac.new(
            self.secret.encode("utf-8"),
            body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"sha256={digest}"

    async def notify(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        retry: bool = True,
    ) -> bool:
        """Send a webhook notification.

        Args:
            event_type: Type of event (e.g., "rollout.rollback_failed")
            payload: Event-specific data
            retry: Whether to retry on failure

        Returns:
            True if webhook was sent successfully, False otherwise
        """
        if not self.enabled:
            return False

        event = WebhookEvent(
            event_type=event_type,
            timestamp=datetime.now(UTC).isoformat(),
            payload=payload,
        )
        headers = {"Content-Type": "application/json"}
        signature = self._sign(event)
        if signature:
            headers["X-RolloutGate-Signature"] = signature

        attempts = self.max_retries if retry else 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self.webhook_url,  # type: ignore[arg-type]
                        json=event.to_dict(),
                        headers=headers,
                    )
                    response.raise_for_status()
                    logger.info(
                        "webhook_sent",
                        event_type=event_type,
                        status_code=response.status_code,
                    )
                    return True
            except httpx.HTTPError as exc:
                last_error = exc
                if attempt < attempts - 1:
                    # Exponential backoff: 1s, 2s, 4s
                    await asyncio.sleep(2**attempt)

        logger.error(
            "webhook_failed",
            event_type=event_type,
            error=str(last_error),
            attempts=attempts,
        )
        return False

    async def notify_outcome(
        self,
        *,
        rollout_id: str,
        target: str,
        status: str,
        rationale: str,
        phase_index: int,
    ) -> bool:
        """Notify about a terminal rollout outcome."""
        return await self.notify(
            f"rollout.{status}",
            {
                "rollout_id": rollout_id,
                "target": target,
                "status": status,
                "phase_index": phase_index,
                "rationale": rationale,
                "requires_intervention": status == "rollback_failed",
            },
        )

    async def notify_awaiting_approval(
        self,
        *,
        rollout_id: str,
        target: str,
        phase_index: int,
    ) -> bool:
        """Notify approvers that a phase is waiting for sign-off."""
        return await self.notify(
            "rollout.awaiting_approval",
            {"rollout_id": rollout_id, "target": target, "phase_index": phase_index},
        )

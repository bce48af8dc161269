"""HTTP client for RolloutGate."""

from __future__ import annotations

import os
from collections.abc import Mapping
from types import TracebackType
from typing import Any, cast

import httpx


class RolloutGateAPIError(RuntimeError):
    """Structured API error raised for non-2xx responses."""

    def __init__(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        payload: dict[str, Any] | str | None,
    ) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.payload = payload
        message = f"{method} {path} failed with status {status_code}"
        if isinstance(payload, dict) and isinstance(payload.get("detail"), str):
            message = f"{message}: {payload['detail']}"
        elif isinstance(payload, dict) and isinstance(payload.get("message"), str):
            message = f"{message}: {payload['message']}"
        elif isinstance(payload, str) and payload:
            message = f"{message}: {payload}"
        super().__init__(message)


class RolloutGateClient:
    """Async client for the RolloutGate HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._headers: dict[str, str] = dict(headers or {})
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    @classmethod
    def from_env(cls, *, base_url: str | None = None) -> RolloutGateClient:
        """Create a client from conventional RolloutGate environment variables."""
        resolved_base_url = (
            base_url or os.getenv("ROLLOUTGATE_URL") or "http://localhost:8000"
        ).strip()
        return cls(resolved_base_url, api_key=os.getenv("ROLLOUTGATE_ADMIN_API_KEY"))

    def _build_headers(
        self, *, api_key: str | None = None, require_api_key: bool = False
    ) -> dict[str, str]:
        headers = dict(self._headers)
        resolved_api_key = api_key if api_key is not None else self.api_key
        if require_api_key and not resolved_api_key:
            raise ValueError("api_key required for admin endpoint")
        if resolved_api_key:
            headers["X-API-Key"] = resolved_api_key
        return headers

    @staticmethod
    def _decode_payload(response: httpx.Response) -> dict[str, Any] | str | None:
        if not response.content:
            return None
        try:
            return cast(dict[str, Any], response.json())
        except ValueError:
            return response.text

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        api_key: str | None = None,
        require_api_key: bool = False,
    ) -> dict[str, Any]:
        headers = self._build_headers(api_key=api_key, require_api_key=require_api_key)
        response = await self._client.request(
            method=method,
            url=path,
            json=json_body,
            params=params,
            headers=headers or None,
        )
        payload = self._decode_payload(response)
        if response.status_code >= 400:
            raise RolloutGateAPIError(
                method=method,
                path=path,
                status_code=response.status_code,
                payload=payload,
            )
        if isinstance(payload, dict):
            return payload
        return {}

    async def health(self) -> dict[str, Any]:
        """Fetch service health details."""
        return await self._request_json("GET", "/health")

    async def preview_strategy(self, risk_score: float) -> dict[str, Any]:
        """Return the plan a risk score would produce."""
        return await self._request_json(
            "GET", "/strategies/preview", params={"risk_score": risk_score}
        )

    async def start_rollout(
        self, payload: dict[str, Any], *, api_key: str | None = None
    ) -> dict[str, Any]:
        """Assess a change and start its rollout (admin)."""
        return await self._request_json(
            "POST", "/rollouts", json_body=payload, api_key=api_key, require_api_key=True
        )

    async def list_rollouts(
        self,
        *,
        target: str | None = None,
        status: str | None = None,
        active: bool | None = None,
    ) -> dict[str, Any]:
        """List rollout summaries."""
        params: dict[str, Any] = {}
        if target is not None:
            params["target"] = target
        if status is not None:
            params["status"] = status
        if active is not None:
            params["active"] = str(active).lower()
        return await self._request_json("GET", "/rollouts", params=params or None)

    async def get_rollout(self, rollout_id: str) -> dict[str, Any]:
        """Fetch one rollout with its decision log."""
        return await self._request_json("GET", f"/rollouts/{rollout_id}")

    async def abort_rollout(
        self, rollout_id: str, reason: str, *, api_key: str | None = None
    ) -> dict[str, Any]:
        """Abort a rollout (admin)."""
        return await self._request_json(
            "POST",
            f"/rollouts/{rollout_id}/abort",
            json_body={"reason": reason},
            api_key=api_key,
            require_api_key=True,
        )

    async def decide_approval(
        self,
        rollout_id: str,
        *,
        phase_index: int,
        approved: bool,
        approver: str,
        comment: str | None = None,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        """Approve or deny a phase awaiting sign-off (admin)."""
        payload: dict[str, Any] = {
            "phase_index": phase_index,
            "approved": approved,
            "approver": approver,
        }
        if comment:
            payload["comment"] = comment
        return await self._request_json(
            "POST",
            f"/rollouts/{rollout_id}/approvals",
            json_body=payload,
            api_key=api_key,
            require_api_key=True,
        )

    async def pending_approvals(self) -> dict[str, Any]:
        """List phases waiting for approval."""
        return await self._request_json("GET", "/approvals/pending")

    async def push_sample(self, target: str, sample: dict[str, Any]) -> dict[str, Any]:
        """Push a health sample for a target."""
        return await self._request_json("POST", f"/targets/{target}/samples", json_body=sample)

    async def freeze_target(
        self, target: str, reason: str | None = None, *, api_key: str | None = None
    ) -> dict[str, Any]:
        """Abort and block rollouts of a target (admin)."""
        return await self._request_json(
            "POST",
            f"/targets/{target}/freeze",
            json_body={"reason": reason} if reason else None,
            api_key=api_key,
            require_api_key=True,
        )

    async def unfreeze_target(self, target: str, *, api_key: str | None = None) -> dict[str, Any]:
        """Lift a target freeze (admin)."""
        return await self._request_json(
            "POST", f"/targets/{target}/unfreeze", api_key=api_key, require_api_key=True
        )

    async def freeze_system(
        self, reason: str | None = None, *, api_key: str | None = None
    ) -> dict[str, Any]:
        """Abort and block every rollout (admin)."""
        return await self._request_json(
            "POST",
            "/system/freeze",
            json_body={"reason": reason} if reason else None,
            api_key=api_key,
            require_api_key=True,
        )

    async def unfreeze_system(self, *, api_key: str | None = None) -> dict[str, Any]:
        """Lift a system-wide freeze (admin)."""
        return await self._request_json(
            "POST", "/system/unfreeze", api_key=api_key, require_api_key=True
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> RolloutGateClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

"""Operator abort switch backed by Redis.

Lets an operator abort a rollout (or every rollout of a target, or all
rollouts) from outside the process that runs the controller. Controllers
check the switch on every evaluation tick.
"""

from __future__ import annotations

import inspect
from typing import Any

from redis.asyncio import Redis

from rolloutgate.logging import get_logger

logger = get_logger(__name__)


class AbortSwitch:
    """Abort flags at rollout, target, and global scope."""

    def __init__(
        self,
        redis: Redis,
        prefix: str = "rolloutgate:abort",
        max_retries: int = 1,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.max_retries = max(0, max_retries)

    async def _recover_connection(self) -> None:
        """Attempt to recover Redis pool after a transient failure."""
        pool = getattr(self.redis, "connection_pool", None)
        disconnect = getattr(pool, "disconnect", None)
        if not callable(disconnect):
            return
        result = disconnect()
        if inspect.isawaitable(result):
            await result

    async def _redis_call(self, method_name: str, *args: Any) -> Any:
        operation = getattr(self.redis, method_name)
        last_error: Exception | None = None
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return await operation(*args)
            except Exception as exc:
                last_error = exc
                if attempt < attempts - 1:
                    await self._recover_connection()
                    continue
        if last_error is None:
            raise RuntimeError(f"Redis call failed: {method_name}")
        raise last_error

    async def abort_reason(self, rollout_id: str, target: str) -> str | None:
        """Return the abort reason if any scope covering this rollout is set.

        Redis outages are logged and read as "not aborted": losing the remote
        switch must not roll back every healthy rollout at once. The
        in-process abort path stays available.
        """
        keys = (
            f"{self.prefix}:global",
            f"{self.prefix}:target:{target}",
            f"{self.prefix}:rollout:{rollout_id}",
        )
        try:
            for key in keys:
                if await self._redis_call("exists", key):
                    reason = await self._redis_call("get", key)
                    return str(reason) if reason else "aborted"
            return None
        except Exception as exc:
            logger.error("abort_switch_check_failed", error=str(exc))
            return None

    async def abort_rollout(self, rollout_id: str, reason: str | None) -> bool:
        return await self._set(f"{self.prefix}:rollout:{rollout_id}", reason or "Rollout aborted")

    async def abort_target(self, target: str, reason: str | None) -> bool:
        return await self._set(f"{self.prefix}:target:{target}", reason or "Target frozen")

    async def abort_all(self, reason: str | None) -> bool:
        return await self._set(f"{self.prefix}:global", reason or "All rollouts aborted")

    async def clear_rollout(self, rollout_id: str) -> bool:
        return await self._delete(f"{self.prefix}:rollout:{rollout_id}")

    async def clear_target(self, target: str) -> bool:
        return await self._delete(f"{self.prefix}:target:{target}")

    async def clear_all(self) -> bool:
        return await self._delete(f"{self.prefix}:global")

    async def health(self) -> bool:
        """Check if Redis is reachable."""
        try:
            await self._redis_call("ping")
            return True
        except Exception:
            return False

    async def _set(self, key: str, reason: str) -> bool:
        try:
            await self._redis_call("set", key, reason)
            return True
        except Exception as exc:
            logger.error("abort_switch_set_failed", key=key, error=str(exc))
            return False

    async def _delete(self, key: str) -> bool:
        try:
            await self._redis_call("delete", key)
            return True
        except Exception as exc:
            logger.error("abort_switch_clear_failed", key=key, error=str(exc))
            return False

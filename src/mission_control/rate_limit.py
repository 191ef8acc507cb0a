"""外部 API プロバイダごとのレート制限 (QPS・日次クォータ・指数バックオフ)。"""

from __future__ import annotations

import inspect
import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from .errors import RateLimitedError
from .models import ArtifactType, Producer, utcnow
from .models.domain import Clock
from .state_store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

WARNING_RATIO = 0.8
COOLDOWN_AFTER_ATTEMPTS = 3
CALL_RETENTION = timedelta(seconds=10)
QPS_WINDOW = timedelta(seconds=1)


@dataclass(frozen=True, slots=True)
class ProviderLimit:
    qps: float
    daily_quota: Optional[int]
    backoff_max_ms: int


PROVIDER_LIMITS: dict[str, ProviderLimit] = {
    "serp": ProviderLimit(qps=1, daily_quota=1000, backoff_max_ms=60_000),
    "gsc": ProviderLimit(qps=5, daily_quota=25_000, backoff_max_ms=30_000),
    "ga4": ProviderLimit(qps=10, daily_quota=50_000, backoff_max_ms=30_000),
    "ads": ProviderLimit(qps=1, daily_quota=15_000, backoff_max_ms=60_000),
    "ahrefs": ProviderLimit(qps=1, daily_quota=None, backoff_max_ms=60_000),
    "perplexity": ProviderLimit(qps=1, daily_quota=None, backoff_max_ms=60_000),
    "gemini": ProviderLimit(qps=5, daily_quota=None, backoff_max_ms=30_000),
    "refract": ProviderLimit(qps=2, daily_quota=None, backoff_max_ms=30_000),
}


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    provider: str
    code: Optional[str] = None
    reason: Optional[str] = None
    retry_after_ms: Optional[int] = None
    warning: Optional[str] = None
    remaining: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _status_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code


class RateLimitService:
    """プロバイダ単位で呼び出し頻度と日次使用量を管理する。"""

    def __init__(
        self,
        store: StateStore | None = None,
        limits: dict[str, ProviderLimit] | None = None,
        *,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.limits = dict(limits or PROVIDER_LIMITS)
        self.clock = clock
        self._calls: dict[str, list[datetime]] = {}
        self._daily_usage: dict[str, int] = {}
        self._usage_day: date = self._today()
        self._backoff: dict[str, dict[str, Any]] = {}
        self._cooldowns: dict[str, datetime] = {}

    def _today(self) -> date:
        return self.clock().astimezone(timezone.utc).date()

    def _roll_day(self) -> None:
        today = self._today()
        if today != self._usage_day:
            logger.info(f"Daily API usage reset for {today.isoformat()}")
            self._daily_usage.clear()
            self._usage_day = today

    def _log_event(self, provider: str, event: str, mission_id: str | None, details: dict[str, Any]) -> None:
        if self.store is None or mission_id is None:
            return
        self.store.add_artifact(
            ArtifactType.RATE_LIMIT_EVENT,
            {"provider": provider, "event": event, "details": details},
            mission_id=mission_id,
            producer=Producer.SYSTEM,
        )

    def check_rate_limit(self, provider: str, mission_id: str | None = None) -> RateLimitDecision:
        """呼び出し可否を判定する。記録は record_call で行う。"""
        limit = self.limits.get(provider)
        if limit is None:
            logger.warning(f"No rate limit configured for provider {provider}")
            return RateLimitDecision(
                allowed=True,
                provider=provider,
                warning=f"Unknown provider {provider}; no limits enforced",
            )

        self._roll_day()
        now = self.clock()

        backoff = self._backoff.get(provider)
        if backoff and backoff["until"] > now:
            retry_after = int((backoff["until"] - now).total_seconds() * 1000)
            return RateLimitDecision(
                allowed=False,
                provider=provider,
                code="BACKOFF_ACTIVE",
                reason=f"Backoff active for {provider} (attempt {backoff['attempt']})",
                retry_after_ms=retry_after,
            )

        recent = [ts for ts in self._calls.get(provider, []) if now - ts < QPS_WINDOW]
        if len(recent) >= limit.qps:
            elapsed_ms = (now - min(recent)).total_seconds() * 1000
            return RateLimitDecision(
                allowed=False,
                provider=provider,
                code="QPS_EXCEEDED",
                reason=f"{provider} allows {limit.qps} calls per second",
                retry_after_ms=max(0, math.ceil(1000 - elapsed_ms)),
            )

        used = self._daily_usage.get(provider, 0)
        remaining: Optional[int] = None
        warning: Optional[str] = None
        if limit.daily_quota is not None:
            remaining = max(0, limit.daily_quota - used)
            if used >= limit.daily_quota:
                self._log_event(
                    provider,
                    "quota_exceeded",
                    mission_id,
                    {"used": used, "daily_quota": limit.daily_quota},
                )
                return RateLimitDecision(
                    allowed=False,
                    provider=provider,
                    code="QUOTA_EXCEEDED",
                    reason=f"Daily quota of {limit.daily_quota} exhausted for {provider}",
                    remaining=0,
                )
            if used >= limit.daily_quota * WARNING_RATIO:
                warning = f"{provider} has used {used}/{limit.daily_quota} of its daily quota"

        return RateLimitDecision(allowed=True, provider=provider, warning=warning, remaining=remaining)

    def record_call(self, provider: str) -> None:
        self._roll_day()
        now = self.clock()
        calls = [ts for ts in self._calls.get(provider, []) if now - ts < CALL_RETENTION]
        calls.append(now)
        self._calls[provider] = calls
        self._daily_usage[provider] = self._daily_usage.get(provider, 0) + 1

    def record_throttle(self, provider: str, mission_id: str | None = None) -> dict[str, Any]:
        """429 応答を記録し、指数バックオフを設定する。"""
        limit = self.limits.get(provider)
        backoff_max = limit.backoff_max_ms if limit else 60_000
        now = self.clock()
        attempt = self._backoff.get(provider, {}).get("attempt", 0) + 1
        delay_ms = min(2**attempt * 1000, backoff_max)
        until = now + timedelta(milliseconds=delay_ms)
        self._backoff[provider] = {"attempt": attempt, "until": until}
        cooldown = attempt >= COOLDOWN_AFTER_ATTEMPTS
        if cooldown:
            self._cooldowns[provider] = now
            self._log_event(
                provider,
                "cooldown",
                mission_id,
                {"attempt": attempt, "backoff_ms": delay_ms},
            )
        logger.warning(f"Throttled by {provider}: attempt {attempt}, backing off {delay_ms}ms")
        return {
            "provider": provider,
            "attempt": attempt,
            "backoff_ms": delay_ms,
            "until": until.isoformat(),
            "cooldown": cooldown,
        }

    def reset_backoff(self, provider: str) -> None:
        self._backoff.pop(provider, None)
        self._cooldowns.pop(provider, None)

    def get_quota_remaining(self, provider: str) -> Optional[int]:
        self._roll_day()
        limit = self.limits.get(provider)
        if limit is None or limit.daily_quota is None:
            return None
        return max(0, limit.daily_quota - self._daily_usage.get(provider, 0))

    def get_status(self) -> dict[str, Any]:
        self._roll_day()
        now = self.clock()
        status: dict[str, Any] = {}
        for provider, limit in self.limits.items():
            backoff = self._backoff.get(provider)
            status[provider] = {
                "qps": limit.qps,
                "daily_quota": limit.daily_quota,
                "used_today": self._daily_usage.get(provider, 0),
                "remaining": self.get_quota_remaining(provider),
                "backoff_active": bool(backoff and backoff["until"] > now),
                "backoff_attempt": backoff["attempt"] if backoff else 0,
                "cooldown_since": self._cooldowns[provider].isoformat() if provider in self._cooldowns else None,
            }
        return status

    async def with_rate_limit(
        self,
        provider: str,
        call: Callable[[], Union[Awaitable[T], T]],
        *,
        mission_id: str | None = None,
    ) -> T:
        """レート制限を確認してから呼び出しを実行する。"""
        decision = self.check_rate_limit(provider, mission_id)
        if not decision.allowed:
            raise RateLimitedError(
                decision.reason or f"Rate limited: {provider}",
                provider=provider,
                reason_code=decision.code,
                retry_after_ms=decision.retry_after_ms,
            )
        self.record_call(provider)
        try:
            result = call()
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            if _status_code(exc) == 429:
                self.record_throttle(provider, mission_id)
            raise
        return result  # type: ignore[return-value]

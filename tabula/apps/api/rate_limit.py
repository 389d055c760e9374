from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import random
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.response import get_request_id
from tabula.core.config import Settings, get_settings
from tabula.services.audit import EVENT_RATE_LIMIT_DEGRADED, EVENT_RATE_LIMITED, record_event
from tabula.services.permissions import Caller


logger = logging.getLogger(__name__)

ROUTE_CLASS_MUTATION = "mutation"
ROUTE_CLASS_READ = "read"

RL_BACKEND_MEMORY = "memory"
RL_BACKEND_REDIS = "redis"

_MUTATION_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

_DEGRADED_SAMPLE_RATE = 0.05


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate plus burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RouteLimitConfig:
    # User and tenant buckets are checked together; both must admit the request.
    user: BucketConfig
    tenant: BucketConfig


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    scope: str | None
    retry_after_ms: int
    user_remaining: float | None = None
    tenant_remaining: float | None = None


# KEYS: user bucket, tenant bucket. ARGV: now_ms, cost, then rate, burst, ttl per bucket.
# Both buckets are refilled, then debited only when each holds enough tokens.
_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local cost = tonumber(ARGV[2])
local tokens = {}
local retry = {}
local admitted = true
for i = 1, 2 do
  local rate = tonumber(ARGV[i * 3])
  local burst = tonumber(ARGV[i * 3 + 1])
  local state = redis.call("HMGET", KEYS[i], "tokens", "ts")
  local current = tonumber(state[1]) or burst
  local ts = math.min(tonumber(state[2]) or now_ms, now_ms)
  current = math.min(burst, current + ((now_ms - ts) / 1000.0) * rate)
  tokens[i] = current
  if current >= cost then
    retry[i] = 0
  else
    admitted = false
    if rate <= 0 then
      retry[i] = 1000
    else
      retry[i] = math.ceil(((cost - current) / rate) * 1000)
    end
  end
end
for i = 1, 2 do
  if admitted then
    tokens[i] = tokens[i] - cost
  end
  redis.call("HSET", KEYS[i], "tokens", tostring(tokens[i]), "ts", now_ms)
  redis.call("EXPIRE", KEYS[i], tonumber(ARGV[i * 3 + 2]))
end
return {tostring(tokens[1]), retry[1], tostring(tokens[2]), retry[2]}
"""


def route_class_for_request(request: Request) -> str:
    # Writes and reads draw from separate buckets.
    if request.method.upper() in _MUTATION_METHODS:
        return ROUTE_CLASS_MUTATION
    return ROUTE_CLASS_READ


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    """Bucket level at ``now_ms``: a new bucket starts full and refill is capped at burst."""
    if tokens is None:
        return float(burst)
    elapsed_ms = max(0, now_ms - (now_ms if last_ms is None else last_ms))
    return min(float(burst), tokens + (elapsed_ms / 1000.0) * rate)


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    deficit = cost - tokens
    if deficit <= 0:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(deficit / rate * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Twice the time a drained bucket needs to refill.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil(burst / rate * 2)))


class RateLimiter:
    """Dual-bucket token limiter; subclasses decide where bucket state lives."""

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    @staticmethod
    def _bucket_names(user_id: str, tenant_id: str, route_class: str) -> tuple[str, str]:
        return f"user:{tenant_id}:{user_id}:{route_class}", f"tenant:{tenant_id}:{route_class}"

    @staticmethod
    def _decision(
        route_class: str,
        *,
        user_tokens: float,
        user_retry: int,
        tenant_tokens: float,
        tenant_retry: int,
    ) -> RateLimitDecision:
        # A non-zero retry marks a bucket that refused; the longest wait is reported.
        if user_retry == 0 and tenant_retry == 0:
            scope, retry_after_ms = None, 0
        elif tenant_retry > user_retry:
            scope, retry_after_ms = "tenant", tenant_retry
        else:
            scope, retry_after_ms = "user", user_retry
        return RateLimitDecision(
            allowed=scope is None,
            route_class=route_class,
            scope=scope,
            retry_after_ms=retry_after_ms,
            user_remaining=user_tokens,
            tenant_remaining=tenant_tokens,
        )

    async def check(
        self,
        *,
        user_id: str,
        tenant_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        raise NotImplementedError

    async def cleanup_idle_buckets(self) -> int:
        return 0


class InMemoryRateLimiter(RateLimiter):
    def __init__(
        self,
        *,
        idle_ttl_s: float = 600,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(time_provider=time_provider)
        self._idle_ttl_ms = int(max(1.0, float(idle_ttl_s)) * 1000)
        # bucket name -> (tokens, last update ms)
        self._buckets: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    async def check(
        self,
        *,
        user_id: str,
        tenant_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        names = self._bucket_names(user_id, tenant_id, route_class)
        configs = (limits.user, limits.tenant)
        async with self._lock:
            now_ms = self._now_ms()
            levels = []
            for name, config in zip(names, configs):
                tokens, last_ms = self._buckets.get(name, (None, None))
                levels.append(
                    _calculate_tokens(
                        tokens=tokens, last_ms=last_ms, now_ms=now_ms, rate=config.rps, burst=config.burst
                    )
                )
            retries = [
                _retry_after_ms(level, rate=config.rps, cost=cost) for level, config in zip(levels, configs)
            ]
            if not any(retries):
                levels = [level - cost for level in levels]
            for name, level in zip(names, levels):
                self._buckets[name] = (level, now_ms)
        return self._decision(
            route_class,
            user_tokens=levels[0],
            user_retry=retries[0],
            tenant_tokens=levels[1],
            tenant_retry=retries[1],
        )

    async def cleanup_idle_buckets(self) -> int:
        # Buckets untouched for the idle window would be full again anyway.
        async with self._lock:
            cutoff = self._now_ms() - self._idle_ttl_ms
            idle = [name for name, (_, last_ms) in self._buckets.items() if last_ms <= cutoff]
            for name in idle:
                del self._buckets[name]
        if idle:
            logger.debug("rate_limit_idle_buckets_removed count=%s", len(idle))
        return len(idle)


class RedisRateLimiter(RateLimiter):
    """Shared buckets evaluated atomically by a Lua script; Redis expires idle keys."""

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(time_provider=time_provider)
        self._redis = redis
        self._prefix = prefix

    async def check(
        self,
        *,
        user_id: str,
        tenant_id: str,
        route_class: str,
        cost: int,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        user_bucket, tenant_bucket = self._bucket_names(user_id, tenant_id, route_class)
        args: list[float | int] = [self._now_ms(), cost]
        for config in (limits.user, limits.tenant):
            args.extend([config.rps, config.burst, _ttl_seconds(config.rps, config.burst)])
        result = await self._redis.eval(
            _TOKEN_BUCKET_LUA,
            2,
            f"{self._prefix}:{user_bucket}",
            f"{self._prefix}:{tenant_bucket}",
            *args,
        )
        return self._decision(
            route_class,
            user_tokens=float(result[0]),
            user_retry=int(float(result[1])),
            tenant_tokens=float(result[2]),
            tenant_retry=int(float(result[3])),
        )


def build_rate_limiter(settings: Settings | None = None) -> RateLimiter:
    settings = settings or get_settings()
    backend = settings.rl_backend.lower()
    if backend == RL_BACKEND_REDIS:
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisRateLimiter(redis, prefix=settings.rl_redis_prefix)
    if backend != RL_BACKEND_MEMORY:
        logger.warning("rate_limit_backend_unknown backend=%s fallback=memory", backend)
    return InMemoryRateLimiter(idle_ttl_s=settings.rl_idle_bucket_ttl_s)


def limits_for_route(route_class: str, settings: Settings | None = None) -> RouteLimitConfig:
    settings = settings or get_settings()
    if route_class == ROUTE_CLASS_MUTATION:
        return RouteLimitConfig(
            user=BucketConfig(settings.rl_mutation_rps, settings.rl_mutation_burst),
            tenant=BucketConfig(settings.rl_tenant_mutation_rps, settings.rl_tenant_mutation_burst),
        )
    return RouteLimitConfig(
        user=BucketConfig(settings.rl_read_rps, settings.rl_read_burst),
        tenant=BucketConfig(settings.rl_tenant_read_rps, settings.rl_tenant_read_burst),
    )


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Stable 429 with retry hints in both headers and body.
    retry_after_s = int(math.ceil(decision.retry_after_ms / 1000.0))
    headers = {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Scope": decision.scope or "unknown",
        "X-RateLimit-Route-Class": decision.route_class,
        "X-RateLimit-Retry-After-Ms": str(decision.retry_after_ms),
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "scope": decision.scope or "unknown",
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    # Fail-closed mode surfaces limiter storage outages as 503.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    caller: Caller,
    limiter: RateLimiter | None,
    db: AsyncSession | None = None,
) -> None:
    # Runs after identity resolution; limiter outages follow rl_fail_mode.
    settings = get_settings()
    if not settings.rate_limit_enabled or limiter is None:
        return

    route_class = route_class_for_request(request)
    try:
        decision = await limiter.check(
            user_id=caller.user_id,
            tenant_id=caller.tenant_id,
            route_class=route_class,
            cost=1,
            limits=limits_for_route(route_class, settings),
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        if random.random() < _DEGRADED_SAMPLE_RATE:
            await record_event(
                session=db,
                tenant_id=caller.tenant_id,
                actor_type="system",
                actor_id="rate_limit",
                event_type=EVENT_RATE_LIMIT_DEGRADED,
                outcome="failure",
                resource_type="rate_limit",
                request_id=get_request_id(request),
                metadata={
                    "route_class": route_class,
                    "path": request.url.path,
                    "fail_mode": settings.rl_fail_mode,
                },
                commit=True,
                best_effort=True,
            )
        logger.warning("rate_limit_degraded path=%s", request.url.path)
        return

    if decision.allowed:
        return

    await record_event(
        session=db,
        tenant_id=caller.tenant_id,
        actor_type="user",
        actor_id=caller.user_id,
        actor_role=caller.role,
        event_type=EVENT_RATE_LIMITED,
        outcome="failure",
        resource_type="rate_limit",
        request_id=get_request_id(request),
        metadata={
            "scope": decision.scope,
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
            "path": request.url.path,
        },
        commit=True,
        best_effort=True,
    )
    raise _throttle_exception(decision=decision)

"""
Tiered, subscription-aware rate limiting with fixed-window counters.
"""

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from loguru import logger

from aegis.utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit configuration."""
    window_ms: int
    max_requests: int
    message: str
    standard_headers: bool = True
    legacy_headers: bool = False
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000


@dataclass(frozen=True)
class RateLimitTier:
    """Named quota applied to an ordered list of endpoint globs."""
    name: str
    config: RateLimitConfig
    endpoints: Tuple[str, ...]

    def matches(self, path: str) -> bool:
        for endpoint in self.endpoints:
            if endpoint.endswith("*"):
                if path.startswith(endpoint[:-1]):
                    return True
            elif path == endpoint:
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "windowMs": self.config.window_ms,
            "max": self.config.max_requests,
            "message": self.config.message,
            "endpoints": list(self.endpoints),
        }


# Ordered most specific first; the catch-all must stay last
DEFAULT_TIERS: Tuple[RateLimitTier, ...] = (
    RateLimitTier(
        name="authentication",
        config=RateLimitConfig(
            window_ms=15 * 60 * 1000,
            max_requests=5,
            message="Too many authentication attempts. Please try again in 15 minutes.",
        ),
        endpoints=("/api/auth/login", "/api/auth/register", "/api/auth/forgot-password"),
    ),
    RateLimitTier(
        name="content_generation",
        config=RateLimitConfig(
            window_ms=60 * 60 * 1000,
            max_requests=20,
            message="Content generation limit exceeded. Upgrade your plan for higher limits.",
        ),
        endpoints=("/api/generate-content", "/api/ai/*"),
    ),
    RateLimitTier(
        name="admin_operations",
        config=RateLimitConfig(
            window_ms=5 * 60 * 1000,
            max_requests=50,
            message="Admin operation rate limit exceeded. Please wait before retrying.",
        ),
        endpoints=("/api/admin/*", "/api/companies/*", "/api/billing/*"),
    ),
    RateLimitTier(
        name="file_uploads",
        config=RateLimitConfig(
            window_ms=60 * 60 * 1000,
            max_requests=30,
            message="File upload limit exceeded. Please try again later.",
        ),
        endpoints=("/api/upload/*", "/api/check-ins"),
    ),
    RateLimitTier(
        name="api_access",
        config=RateLimitConfig(
            window_ms=15 * 60 * 1000,
            max_requests=100,
            message="API rate limit exceeded. Please slow down your requests.",
        ),
        endpoints=("/api/*",),
    ),
)


class SubscriptionPlan(Enum):
    """Subscription plans known to the quota scaler."""
    FREE = "free"
    TRIAL = "trial"
    PAID = "paid"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionPlan":
        """Any named plan other than free, trial or enterprise is a paid plan."""
        if not value:
            return cls.FREE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PAID


@dataclass
class RequestIdentity:
    """Who a request counts against."""
    ip: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    subscription_active: bool = False

    def key(self, tier_name: str) -> str:
        if self.user_id:
            return f"{tier_name}:user:{self.user_id}"
        return f"{tier_name}:ip:{self.ip}"

    def is_privileged(self, privileged_roles: Iterable[str]) -> bool:
        return self.role is not None and self.role in privileged_roles


def quota_multiplier(identity: RequestIdentity) -> float:
    """Quota scaling factor; enterprise takes precedence over a paid subscription."""
    if identity.plan is SubscriptionPlan.ENTERPRISE:
        return 5.0
    if identity.plan is SubscriptionPlan.PAID and identity.subscription_active:
        return 2.5
    return 1.0


@dataclass
class RateLimitDecision:
    """Outcome of a quota check."""
    allowed: bool
    tier: Optional[RateLimitTier] = None
    key: Optional[str] = None
    limit: int = 0
    remaining: int = 0
    reset_after: float = 0.0
    counted: bool = False

    @property
    def retry_after(self) -> Optional[int]:
        if self.allowed or self.tier is None:
            return None
        return round(self.tier.config.window_seconds)

    def headers(self) -> Dict[str, str]:
        if self.tier is None or not self.counted:
            return {}
        headers = {}
        reset = str(max(0, math.ceil(self.reset_after)))
        if self.tier.config.standard_headers:
            headers["RateLimit-Limit"] = str(self.limit)
            headers["RateLimit-Remaining"] = str(self.remaining)
            headers["RateLimit-Reset"] = reset
        if self.tier.config.legacy_headers:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = str(self.remaining)
            headers["X-RateLimit-Reset"] = reset
        if not self.allowed:
            headers["Retry-After"] = reset
        return headers


def denial_payload(tier: RateLimitTier) -> Dict[str, Any]:
    return {
        "error": "rate_limit_exceeded",
        "message": tier.config.message,
        "tier": tier.name,
        "retryAfter": round(tier.config.window_seconds),
    }


@dataclass
class _WindowCounter:
    count: int
    reset_at: float


class InMemoryCounterStore:
    """In-memory fixed-window counters for a single process."""

    def __init__(self):
        self.storage: Dict[str, _WindowCounter] = {}
        self.lock = asyncio.Lock()

    async def increment(self, key: str, window_ms: int, now: float) -> Tuple[int, float]:
        """Count one hit; returns (count, seconds until the window resets)."""
        async with self.lock:
            counter = self.storage.get(key)
            if counter is None or now >= counter.reset_at:
                counter = _WindowCounter(count=0, reset_at=now + window_ms / 1000)
                self.storage[key] = counter
            counter.count += 1
            return counter.count, counter.reset_at - now

    async def decrement(self, key: str):
        async with self.lock:
            counter = self.storage.get(key)
            if counter is not None and counter.count > 0:
                counter.count -= 1

    async def reset(self, key: str) -> bool:
        async with self.lock:
            return self.storage.pop(key, None) is not None

    async def cleanup(self, now: float) -> int:
        async with self.lock:
            expired = [key for key, counter in self.storage.items() if now >= counter.reset_at]
            for key in expired:
                del self.storage[key]
            return len(expired)

    async def close(self):
        self.storage.clear()


class RedisCounterStore:
    """Redis-based fixed-window counters (INCR + PEXPIRE)."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "aegis:ratelimit:"):
        self.redis = redis_client
        self.prefix = prefix

    async def increment(self, key: str, window_ms: int, now: float) -> Tuple[int, float]:
        redis_key = f"{self.prefix}{key}"
        pipeline = self.redis.pipeline()
        pipeline.incr(redis_key)
        pipeline.pttl(redis_key)
        count, ttl_ms = await pipeline.execute()

        # A key without expiry was just created by INCR
        if ttl_ms is None or ttl_ms < 0:
            await self.redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms

        return int(count), ttl_ms / 1000

    async def decrement(self, key: str):
        redis_key = f"{self.prefix}{key}"
        if await self.redis.exists(redis_key):
            await self.redis.decr(redis_key)

    async def reset(self, key: str) -> bool:
        return bool(await self.redis.delete(f"{self.prefix}{key}"))

    async def cleanup(self, now: float) -> int:
        # Redis expires keys on its own
        return 0

    async def close(self):
        await self.redis.aclose()


def build_counter_store(storage: str, redis_url: Optional[str] = None):
    """Create the counter store named by ``RATE_LIMIT_STORAGE``."""
    if storage == "memory":
        logger.warning("Using in-memory rate limiter. Use Redis for multi-worker deployments.")
        return InMemoryCounterStore()
    if storage == "redis":
        if not redis_url:
            raise ConfigurationError("REDIS_URL is required for redis rate limit storage")
        return RedisCounterStore(redis.from_url(redis_url))
    raise ConfigurationError(
        f"Unknown rate limit storage: {storage}",
        details={"allowed": ["memory", "redis"]},
    )


@dataclass
class TierStatistics:
    checked: int = 0
    denied: int = 0
    released: int = 0


class TierEngine:
    """Resolves the tier for a path and enforces its scaled quota."""

    def __init__(
        self,
        tiers: Sequence[RateLimitTier] = DEFAULT_TIERS,
        store=None,
        privileged_roles: Iterable[str] = ("super_admin",),
    ):
        self.tiers = tuple(tiers)
        self.store = store if store is not None else InMemoryCounterStore()
        self.privileged_roles = frozenset(privileged_roles)
        self.statistics: Dict[str, TierStatistics] = {
            tier.name: TierStatistics() for tier in self.tiers
        }
        self._warn_shadowed_patterns()

    def _warn_shadowed_patterns(self):
        for index, tier in enumerate(self.tiers):
            for pattern in tier.endpoints:
                if not pattern.endswith("*"):
                    continue
                prefix = pattern[:-1]
                for later in self.tiers[index + 1:]:
                    shadowed = [
                        endpoint for endpoint in later.endpoints
                        if endpoint.rstrip("*").startswith(prefix)
                    ]
                    if shadowed:
                        logger.warning(
                            f"Rate limit tier '{tier.name}' pattern {pattern} shadows "
                            f"tier '{later.name}' endpoints {shadowed}"
                        )

    def classify(self, path: str) -> Optional[RateLimitTier]:
        for tier in self.tiers:
            if tier.matches(path):
                return tier
        return None

    def effective_limit(self, tier: RateLimitTier, identity: RequestIdentity) -> int:
        return math.floor(tier.config.max_requests * quota_multiplier(identity))

    async def check_and_consume(
        self,
        identity: RequestIdentity,
        tier: Optional[RateLimitTier],
        now: float,
    ) -> RateLimitDecision:
        """Count the request against its tier; denied requests still count."""
        if tier is None:
            return RateLimitDecision(allowed=True)
        if identity.is_privileged(self.privileged_roles):
            return RateLimitDecision(allowed=True, tier=tier)

        limit = self.effective_limit(tier, identity)
        key = identity.key(tier.name)
        count, reset_after = await self.store.increment(key, tier.config.window_ms, now)

        stats = self.statistics.setdefault(tier.name, TierStatistics())
        stats.checked += 1
        allowed = count <= limit
        if not allowed:
            stats.denied += 1
            logger.warning(
                f"Rate limit exceeded: tier={tier.name} key={key} count={count} limit={limit}"
            )

        return RateLimitDecision(
            allowed=allowed,
            tier=tier,
            key=key,
            limit=limit,
            remaining=max(0, limit - count),
            reset_after=reset_after,
            counted=True,
        )

    async def release(self, decision: RateLimitDecision, status_code: int) -> bool:
        """Un-count a request whose outcome the tier skips."""
        if not decision.counted or decision.tier is None or decision.key is None:
            return False
        config = decision.tier.config
        failed = status_code >= 400
        if (failed and config.skip_failed_requests) or (not failed and config.skip_successful_requests):
            await self.store.decrement(decision.key)
            self.statistics.setdefault(decision.tier.name, TierStatistics()).released += 1
            return True
        return False

    def describe_tiers(self) -> List[Dict[str, Any]]:
        return [tier.to_dict() for tier in self.tiers]

    def statistics_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            name: {"checked": stats.checked, "denied": stats.denied, "released": stats.released}
            for name, stats in self.statistics.items()
        }

    async def close(self):
        await self.store.close()

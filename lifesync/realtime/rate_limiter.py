"""
Fixed-window rate limiting for LifeSync.

Counters live in a CounterStore: Redis when several server processes share
one budget, process-local memory for a single node. The limiter fails open
when the store is unreachable unless the traffic class is marked fail_closed.
Repeat offenders escalate to temporary blocks.
"""

import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..exceptions import ErrorContext, RateLimitExceeded
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class CounterStoreError(Exception):
    """The counter store could not be reached or answered with an error."""


class CounterStore(Protocol):
    """Atomic increment-with-TTL counter storage."""

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def close(self) -> None: ...


class InMemoryCounterStore:
    """
    Process-local counter store.

    Expired buckets are dropped lazily on access and in bulk by cleanup_expired().
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._buckets: dict[str, tuple[int, float]] = {}

    async def incr(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        count, expires_at = self._buckets.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + ttl_seconds
        count += 1
        self._buckets[key] = (count, expires_at)
        return count

    def cleanup_expired(self) -> int:
        """Drop expired buckets; returns the number removed."""
        now = self._clock()
        expired = [key for key, (_count, expires_at) in self._buckets.items() if expires_at <= now]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Cleaned up rate limit buckets", bucket_count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._buckets)

    async def close(self) -> None:
        self._buckets.clear()


class RedisCounterStore:
    """Counter store shared across instances through Redis INCR + EXPIRE."""

    def __init__(self, url: str = "redis://localhost:6379/0", socket_timeout: float = 2.0, client=None):
        self.url = url
        self._redis = client or aioredis.from_url(url, decode_responses=True, socket_timeout=socket_timeout)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl_seconds)
                count, _ = await pipe.execute()
        except (RedisError, OSError) as e:
            raise CounterStoreError(str(e)) from e
        return int(count)

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check. reset_time is epoch milliseconds."""

    allowed: bool
    count: int
    remaining: int
    reset_time: int
    limit_type: str = ""
    reason: str | None = None

    def retry_after(self, now: float | None = None) -> float:
        """Seconds until the window (or block) resets."""
        current_ms = (now if now is not None else time.time()) * 1000
        return max(0.0, (self.reset_time - current_ms) / 1000)


@dataclass(frozen=True)
class RequestIdentity:
    """What a key generator can key on."""

    ip: str | None = None
    user_id: str | None = None


def key_by_ip(identity: RequestIdentity) -> str:
    return f"ip:{identity.ip or 'unknown'}"


def key_by_user(identity: RequestIdentity) -> str:
    return f"user:{identity.user_id or 'anonymous'}"


def key_by_user_or_ip(identity: RequestIdentity) -> str:
    if identity.user_id:
        return key_by_user(identity)
    return key_by_ip(identity)


KEY_GENERATORS: dict[str, Callable[[RequestIdentity], str]] = {
    "ip": key_by_ip,
    "user": key_by_user,
    "user_or_ip": key_by_user_or_ip,
}


@dataclass(frozen=True)
class RateLimitRule:
    """A named traffic class."""

    name: str
    window_ms: int
    max_requests: int
    key_generator: str = "ip"
    fail_closed: bool = False

    @property
    def ttl_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)


@dataclass
class _Violation:
    count: int = 0
    first_violation: float = 0.0
    last_violation: float = 0.0
    blocked_until: float = 0.0
    types: set[str] = field(default_factory=set)


class ViolationTracker:
    """
    Tracks rate-limit violations and escalates repeat offenders to blocks.

    After violation_threshold violations a key is blocked; each further
    violation picks the next, longer duration from the ladder.
    """

    def __init__(
        self,
        violation_threshold: int = 5,
        block_durations: Iterable[float] = (60.0, 300.0, 900.0, 3600.0, 86400.0),
        whitelist: Iterable[str] = (),
        clock: Clock = time.time,
    ):
        self.violation_threshold = violation_threshold
        self.block_durations = list(block_durations)
        self.whitelist = set(whitelist)
        self._clock = clock
        self._violations: dict[str, _Violation] = {}

    def is_whitelisted(self, *identifiers: str | None) -> bool:
        return any(identifier in self.whitelist for identifier in identifiers if identifier)

    def blocked_until(self, key: str) -> float | None:
        """Epoch seconds the block on key lifts, or None when not blocked."""
        violation = self._violations.get(key)
        if violation is None or violation.blocked_until <= self._clock():
            return None
        return violation.blocked_until

    def calculate_block_duration(self, violation_count: int) -> float:
        index = min(violation_count - self.violation_threshold, len(self.block_durations) - 1)
        return self.block_durations[max(0, index)]

    def record_violation(self, key: str, violation_type: str) -> float | None:
        """
        Record a violation.

        Returns:
            Block expiry in epoch seconds if this violation triggered a block
        """
        now = self._clock()
        violation = self._violations.setdefault(key, _Violation(first_violation=now))
        violation.count += 1
        violation.last_violation = now
        violation.types.add(violation_type)

        logger.warning(
            "Rate limit violation",
            rate_limit_key=key,
            violation_type=violation_type,
            violation_count=violation.count,
        )

        if violation.count < self.violation_threshold:
            return None

        duration = self.calculate_block_duration(violation.count)
        violation.blocked_until = now + duration
        logger.warning("Temporarily blocked rate limit key", rate_limit_key=key, block_seconds=duration)
        return violation.blocked_until

    def reset(self, key: str) -> None:
        self._violations.pop(key, None)

    def cleanup(self, max_age_seconds: float = 86400.0) -> int:
        """Forget unblocked keys whose last violation is older than max_age_seconds."""
        now = self._clock()
        stale = [
            key
            for key, v in self._violations.items()
            if v.blocked_until <= now and now - v.last_violation > max_age_seconds
        ]
        for key in stale:
            del self._violations[key]
        return len(stale)

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "tracked_keys": len(self._violations),
            "blocked_keys": sum(1 for v in self._violations.values() if v.blocked_until > now),
            "total_violations": sum(v.count for v in self._violations.values()),
        }


class FixedWindowRateLimiter:
    """
    Fixed-window limiter for one traffic class.

    window = floor(now_ms / window_ms); the counter for (class, key, window)
    is incremented atomically with a TTL of one window.
    """

    def __init__(
        self,
        rule: RateLimitRule,
        store: CounterStore,
        violations: ViolationTracker | None = None,
        clock: Clock = time.time,
    ):
        self.rule = rule
        self.store = store
        self.violations = violations
        self._clock = clock
        self._key_generator = KEY_GENERATORS[rule.key_generator]
        self.total_checks = 0
        self.total_denied = 0
        self.store_failures = 0

    def key_for(self, ip: str | None = None, user_id: str | None = None) -> str:
        """Derive the limiter key from request identity using the class's key generator."""
        return self._key_generator(RequestIdentity(ip=ip, user_id=user_id))

    def counter_key(self, key: str, window: int) -> str:
        return f"rate_limit:{self.rule.name}:{key}:{window}"

    async def check_limit(self, key: str) -> RateLimitResult:
        """
        Count one request against key and report whether it is admitted.

        Args:
            key: Limiter key (see key_for)

        Returns:
            RateLimitResult; never raises
        """
        self.total_checks += 1
        now_ms = int(self._clock() * 1000)
        window = now_ms // self.rule.window_ms
        reset_time = (window + 1) * self.rule.window_ms

        if self.violations is not None:
            if self.violations.is_whitelisted(key, key.partition(":")[2]):
                return RateLimitResult(
                    True, 0, self.rule.max_requests, reset_time, self.rule.name, reason="whitelisted"
                )
            blocked_until = self.violations.blocked_until(key)
            if blocked_until is not None:
                self.total_denied += 1
                return RateLimitResult(False, 0, 0, int(blocked_until * 1000), self.rule.name, reason="blocked")

        try:
            count = await self.store.incr(self.counter_key(key, window), self.rule.ttl_seconds)
        except CounterStoreError as e:
            self.store_failures += 1
            logger.error(
                "Rate limit counter store unavailable",
                limit_type=self.rule.name,
                rate_limit_key=key,
                fail_closed=self.rule.fail_closed,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self.rule.fail_closed:
                self.total_denied += 1
                return RateLimitResult(False, 0, 0, reset_time, self.rule.name, reason="store_unavailable")
            return RateLimitResult(
                True, 0, self.rule.max_requests, reset_time, self.rule.name, reason="store_unavailable"
            )

        allowed = count <= self.rule.max_requests
        if not allowed:
            self.total_denied += 1
            if self.violations is not None:
                blocked_until = self.violations.record_violation(key, self.rule.name)
                if blocked_until is not None:
                    reset_time = max(reset_time, int(blocked_until * 1000))

        return RateLimitResult(
            allowed=allowed,
            count=count,
            remaining=max(0, self.rule.max_requests - count),
            reset_time=reset_time,
            limit_type=self.rule.name,
            reason=None if allowed else "limit_exceeded",
        )

    async def enforce(self, key: str, context: ErrorContext | None = None) -> RateLimitResult:
        """
        Like check_limit, but raise when the request is not admitted.

        Raises:
            RateLimitExceeded: carrying the reset time
        """
        result = await self.check_limit(key)
        if not result.allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded for {self.rule.name}",
                context=context,
                limit_type=self.rule.name,
                reset_time=result.reset_time,
                retry_after=result.retry_after(self._clock()),
            )
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "limit_type": self.rule.name,
            "window_ms": self.rule.window_ms,
            "max_requests": self.rule.max_requests,
            "fail_closed": self.rule.fail_closed,
            "total_checks": self.total_checks,
            "total_denied": self.total_denied,
            "store_failures": self.store_failures,
        }


class RateLimiterSet:
    """The named traffic classes sharing one counter store and violation tracker."""

    CLASSES = ("general", "auth", "expensive", "events")

    def __init__(self, limiters: dict[str, FixedWindowRateLimiter], store: CounterStore, violations: ViolationTracker):
        self._limiters = limiters
        self.store = store
        self.violations = violations

    @classmethod
    def from_config(cls, config, store: CounterStore | None = None, clock: Clock = time.time) -> "RateLimiterSet":
        """
        Build every traffic class from a RateLimitConfig.

        Args:
            config: RateLimitConfig
            store: Counter store; process-local memory when omitted
            clock: Time source in epoch seconds
        """
        store = store or InMemoryCounterStore(clock=clock)
        violations = ViolationTracker(
            violation_threshold=config.violation_threshold,
            block_durations=config.block_durations,
            whitelist=config.whitelist,
            clock=clock,
        )
        limiters = {
            name: FixedWindowRateLimiter(
                RateLimitRule(name=name, **config.class_settings(name)), store, violations, clock=clock
            )
            for name in cls.CLASSES
        }
        return cls(limiters, store, violations)

    def __getitem__(self, name: str) -> FixedWindowRateLimiter:
        return self._limiters[name]

    def get(self, name: str) -> FixedWindowRateLimiter | None:
        return self._limiters.get(name)

    def cleanup(self) -> None:
        """Drop expired local buckets and stale violation records."""
        if isinstance(self.store, InMemoryCounterStore):
            self.store.cleanup_expired()
        self.violations.cleanup()

    async def close(self) -> None:
        await self.store.close()

    def get_stats(self) -> dict[str, Any]:
        return {
            "store": type(self.store).__name__,
            "classes": {name: limiter.get_stats() for name, limiter in self._limiters.items()},
            "violations": self.violations.get_stats(),
        }

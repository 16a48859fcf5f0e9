"""
VulnWatch - Resilience Gateway

Every outbound call (repository host, inference backend, bounty platforms)
goes through ResilienceGateway.invoke(). Per dependency key it keeps:

- a circuit breaker: closed -> open on consecutive failures or a rolling
  failure rate -> half-open single probe after cooldown -> closed on success
- a token bucket sized to the dependency's published quota
- a per-call deadline, independent of the breaker window

Breaker rejections (ServiceUnavailable) are distinct from rate-limit
rejections (RateLimited) so callers can defer vs. back off.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import aiohttp

from backend.core.errors import (
    RateLimited,
    ServiceUnavailable,
    Timeout,
    TransientExternal,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Service keys used across the pipeline
HOST = "host"
INFERENCE = "inference"
BOUNTY = "bounty"
CATALOG = "catalog"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class DependencyPolicy:
    """Quota and breaker tuning for one external dependency."""
    rate_per_second: float = 1.0
    burst: int = 1
    call_timeout: float = 30.0
    failure_threshold: int = 5
    failure_rate: float = 0.5
    window_size: int = 20
    min_calls: int = 10
    cooldown_seconds: float = 30.0


class CircuitBreaker:
    """Consecutive-failure / rolling-failure-rate breaker with a single half-open probe."""

    def __init__(self, name: str, policy: DependencyPolicy, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.policy = policy
        self._clock = clock
        self._lock = asyncio.Lock()
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = 0.0
        self._window: Deque[bool] = deque(maxlen=policy.window_size)
        self._probe_in_flight = False

    def _remaining_cooldown(self) -> float:
        return max(0.0, self.policy.cooldown_seconds - (self._clock() - self.opened_at))

    @property
    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for failed in self._window if failed) / len(self._window)

    async def before_call(self):
        """Admit or reject a call. Raises ServiceUnavailable without side effects on rejection."""
        async with self._lock:
            if self.state == BreakerState.CLOSED:
                return
            if self.state == BreakerState.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    raise ServiceUnavailable(self.name, retry_after=remaining)
                self.state = BreakerState.HALF_OPEN
                self._probe_in_flight = False
                logger.info(f"Circuit half-open for {self.name}")
            # HALF_OPEN: exactly one probe at a time
            if self._probe_in_flight:
                raise ServiceUnavailable(self.name, retry_after=self.policy.cooldown_seconds)
            self._probe_in_flight = True

    async def record_success(self):
        async with self._lock:
            self._window.append(False)
            self.consecutive_failures = 0
            if self.state != BreakerState.CLOSED:
                logger.info(f"Circuit closed for {self.name}")
            self.state = BreakerState.CLOSED
            self._probe_in_flight = False

    async def record_failure(self):
        async with self._lock:
            self._window.append(True)
            self.consecutive_failures += 1
            if self.state == BreakerState.HALF_OPEN:
                self._trip()
                return
            if self.state == BreakerState.CLOSED and self._should_trip():
                self._trip()

    async def release_probe(self):
        """Neither success nor failure (cancelled, rate limited): free the half-open slot."""
        async with self._lock:
            self._probe_in_flight = False

    def _should_trip(self) -> bool:
        if self.consecutive_failures >= self.policy.failure_threshold:
            return True
        return len(self._window) >= self.policy.min_calls and self.failure_rate >= self.policy.failure_rate

    def _trip(self):
        self.state = BreakerState.OPEN
        self.opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            f"Circuit OPEN for {self.name} after {self.consecutive_failures} consecutive failures "
            f"(window failure rate {self.failure_rate:.0%})"
        )


class TokenBucket:
    """Non-blocking token bucket: callers get RateLimited instead of waiting."""

    def __init__(self, rate_per_second: float, burst: int, clock: Callable[[], float] = time.monotonic):
        self.rate = rate_per_second
        self.capacity = max(1, burst)
        self._clock = clock
        self._tokens = float(self.capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def try_acquire(self) -> float:
        """Take one token. Returns 0.0 on success, else seconds until a token is available."""
        async with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            if self.rate <= 0:
                return float("inf")
            return (1.0 - self._tokens) / self.rate

    @property
    def tokens(self) -> float:
        return self._tokens


class _Dependency:
    def __init__(self, key: str, policy: DependencyPolicy, clock: Callable[[], float]):
        self.key = key
        self.policy = policy
        self.breaker = CircuitBreaker(key, policy, clock)
        self.bucket = TokenBucket(policy.rate_per_second, policy.burst, clock)
        self.calls = 0
        self.failures = 0
        self.rejected_open = 0
        self.rejected_rate = 0


class ResilienceGateway:
    """Protective shell around every external call. Holds no business logic."""

    def __init__(
        self,
        default_policy: Optional[DependencyPolicy] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.default_policy = default_policy or DependencyPolicy()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._clock = clock
        self._sleep = sleep
        self._deps: Dict[str, _Dependency] = {}

    def register(self, service_key: str, policy: DependencyPolicy) -> None:
        """Register a dependency with its quota. Re-registering replaces its state."""
        self._deps[service_key] = _Dependency(service_key, policy, self._clock)
        logger.debug(f"Gateway registered {service_key}: {policy}")

    def _get(self, service_key: str) -> _Dependency:
        dep = self._deps.get(service_key)
        if dep is None:
            dep = _Dependency(service_key, self.default_policy, self._clock)
            self._deps[service_key] = dep
        return dep

    def breaker_state(self, service_key: str) -> BreakerState:
        return self._get(service_key).breaker.state

    async def invoke(
        self,
        service_key: str,
        operation: Callable[[], Awaitable[T]],
        deadline: Optional[float] = None,
    ) -> T:
        """Run operation() once under breaker, rate limit and deadline.

        Raises ServiceUnavailable, RateLimited, Timeout or UpstreamError.
        """
        dep = self._get(service_key)

        try:
            await dep.breaker.before_call()
        except ServiceUnavailable:
            dep.rejected_open += 1
            raise

        wait = await dep.bucket.try_acquire()
        if wait > 0:
            dep.rejected_rate += 1
            await dep.breaker.release_probe()
            raise RateLimited(service_key, retry_after=wait)

        dep.calls += 1
        timeout = deadline if deadline is not None else dep.policy.call_timeout
        try:
            result = await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.CancelledError:
            await dep.breaker.release_probe()
            raise
        except asyncio.TimeoutError as e:
            dep.failures += 1
            await dep.breaker.record_failure()
            raise Timeout(service_key, f"{service_key}: no answer within {timeout:.1f}s") from e
        except RateLimited:
            # Upstream 429: the dependency is healthy, just busy
            await dep.breaker.release_probe()
            raise
        except UpstreamError as e:
            if e.status is not None and 400 <= e.status < 500:
                # Client-side error: the dependency answered correctly
                await dep.breaker.record_success()
            else:
                dep.failures += 1
                await dep.breaker.record_failure()
            raise
        except TransientExternal:
            dep.failures += 1
            await dep.breaker.record_failure()
            raise
        except (aiohttp.ClientError, ConnectionError, OSError) as e:
            dep.failures += 1
            await dep.breaker.record_failure()
            raise UpstreamError(service_key, f"{service_key}: {type(e).__name__}: {e}") from e
        except Exception:
            await dep.breaker.release_probe()
            raise

        await dep.breaker.record_success()
        return result

    def _backoff_delay(self, attempt: int, error: TransientExternal) -> float:
        if isinstance(error, RateLimited):
            return max(error.retry_after, min(30.0, self.backoff_base * 2.0 * (2 ** attempt)))
        return min(10.0, self.backoff_base * (2 ** attempt))

    async def call_with_retry(
        self,
        service_key: str,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> T:
        """invoke() with capped exponential backoff on transient errors.

        ServiceUnavailable is never retried here: an open breaker means defer.
        """
        retries = self.max_retries if max_retries is None else max_retries
        for attempt in range(retries + 1):
            try:
                return await self.invoke(service_key, operation, deadline=deadline)
            except UpstreamError as e:
                if e.status is not None and 400 <= e.status < 500:
                    raise
                if attempt >= retries:
                    raise
                wait = self._backoff_delay(attempt, e)
                logger.debug(f"Retry {attempt + 1}/{retries} for {service_key} ({e}), wait {wait:.1f}s")
                await self._sleep(wait)
            except TransientExternal as e:
                if attempt >= retries:
                    raise
                wait = self._backoff_delay(attempt, e)
                logger.debug(f"Retry {attempt + 1}/{retries} for {service_key} ({e}), wait {wait:.1f}s")
                await self._sleep(wait)
        raise AssertionError("unreachable")

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Breaker and limiter state per dependency."""
        return {
            key: {
                "state": dep.breaker.state.value,
                "consecutiveFailures": dep.breaker.consecutive_failures,
                "failureRate": round(dep.breaker.failure_rate, 3),
                "tokens": round(dep.bucket.tokens, 2),
                "calls": dep.calls,
                "failures": dep.failures,
                "rejectedOpen": dep.rejected_open,
                "rejectedRateLimit": dep.rejected_rate,
            }
            for key, dep in self._deps.items()
        }


def bounty_key(platform: str) -> str:
    """Each bounty platform gets its own breaker and quota."""
    return f"{BOUNTY}:{platform}"


def build_gateway(settings, bounty_platforms=("algora", "polar")) -> ResilienceGateway:
    """Create the process-wide gateway from Settings."""
    gateway = ResilienceGateway(max_retries=settings.GATEWAY_MAX_RETRIES)

    def _policy(rate: float, burst: int) -> DependencyPolicy:
        return DependencyPolicy(
            rate_per_second=rate,
            burst=burst,
            call_timeout=settings.GATEWAY_CALL_TIMEOUT_SECONDS,
            failure_threshold=settings.GATEWAY_FAILURE_THRESHOLD,
            failure_rate=settings.GATEWAY_FAILURE_RATE,
            window_size=settings.GATEWAY_WINDOW_SIZE,
            min_calls=settings.GATEWAY_MIN_CALLS,
            cooldown_seconds=settings.GATEWAY_COOLDOWN_SECONDS,
        )

    gateway.register(HOST, _policy(settings.HOST_RATE_PER_SECOND, settings.HOST_BURST))
    gateway.register(INFERENCE, _policy(settings.INFERENCE_RATE_PER_SECOND, settings.INFERENCE_BURST))
    for platform in bounty_platforms:
        gateway.register(bounty_key(platform), _policy(settings.BOUNTY_RATE_PER_SECOND, settings.BOUNTY_BURST))
    gateway.register(CATALOG, _policy(settings.CATALOG_RATE_PER_SECOND, settings.CATALOG_BURST))
    return gateway

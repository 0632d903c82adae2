"""Backpressure controller.

Samples store latency and the recent chunk error rate and classifies the
system into one of three regimes. A breach starts a cooldown during which
no new chunk may be dispatched; when the cooldown expires the controller
re-samples before letting dispatch resume.

The state lives in Redis so that the API, the workers and the scheduler
all see the same cooldown.
"""

import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import redis

from config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "backpressure:"


class Regime(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BACKPRESSURE_ACTIVE = "backpressure-active"


@dataclass
class HealthSample:
    latency_ms: float
    request_count: int
    error_count: int
    error_rate: float
    probe_ok: bool = True
    probe_error: Optional[str] = None


@dataclass
class BackpressureStatus:
    regime: Regime
    cooldown_until: Optional[datetime]
    cooldown_remaining_seconds: int
    trigger_reason: Optional[str]
    last_sample: Optional[HealthSample]

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "is_active": self.regime == Regime.BACKPRESSURE_ACTIVE,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "cooldown_remaining_seconds": self.cooldown_remaining_seconds,
            "trigger_reason": self.trigger_reason,
            "last_sample": asdict(self.last_sample) if self.last_sample else None,
        }


class BackpressureController:
    """Process-wide, time-windowed health record.

    ``probe`` performs one store round trip and returns its latency in
    milliseconds (raising on failure); ``clock`` returns epoch seconds.
    Both are injectable so each regime can be forced in tests.
    """

    def __init__(
        self,
        redis_conn: redis.Redis,
        probe: Callable[[], float],
        config=settings,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_conn
        self.probe = probe
        self.config = config
        self.clock = clock
        self.last_sample: Optional[HealthSample] = None

    # -------------------------------------------------------------- counters

    def _window_key(self, name: str) -> str:
        window = int(self.clock() // self.config.error_window_seconds)
        return f"{KEY_PREFIX}{name}:{window}"

    def _incr(self, name: str):
        key = self._window_key(name)
        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.config.error_window_seconds * 2)
        pipe.execute()

    def record_request(self):
        self._incr("requests")

    def record_error(self):
        self._incr("requests")
        self._incr("errors")

    def _counter(self, name: str) -> int:
        return int(self.redis.get(self._window_key(name)) or 0)

    # ------------------------------------------------------------- sampling

    def sample(self) -> HealthSample:
        probe_ok, probe_error = True, None
        start = time.perf_counter()
        try:
            latency_ms = float(self.probe())
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            probe_ok, probe_error = False, str(e)
            self.record_error()

        requests = self._counter("requests")
        errors = self._counter("errors")
        error_rate = (errors * 100.0 / requests) if requests >= self.config.min_requests_for_error_rate else 0.0

        self.redis.set(f"{KEY_PREFIX}last_latency_ms", round(latency_ms, 2))
        self.last_sample = HealthSample(
            latency_ms=round(latency_ms, 2),
            request_count=requests,
            error_count=errors,
            error_rate=round(error_rate, 2),
            probe_ok=probe_ok,
            probe_error=probe_error,
        )
        return self.last_sample

    def classify(self, sample: HealthSample) -> Regime:
        if (
            not sample.probe_ok
            or sample.latency_ms > self.config.latency_unhealthy_ms
            or sample.error_rate > self.config.error_rate_unhealthy
        ):
            return Regime.BACKPRESSURE_ACTIVE
        if sample.latency_ms > self.config.latency_degraded_ms or sample.error_rate > self.config.error_rate_degraded:
            return Regime.DEGRADED
        return Regime.HEALTHY

    # ------------------------------------------------------------- cooldown

    def cooldown_remaining(self) -> int:
        until = self.redis.get(f"{KEY_PREFIX}cooldown_until")
        if not until:
            return 0
        return max(0, math.ceil(float(until) - self.clock()))

    def is_active(self) -> bool:
        return self.cooldown_remaining() > 0

    def trigger(self, reason: str, cooldown_seconds: Optional[int] = None):
        cooldown = cooldown_seconds or self.config.backpressure_cooldown_seconds
        until = self.clock() + cooldown
        ttl = int(cooldown) + 60
        logger.warning(f"Backpressure activated for {cooldown}s: {reason}")
        pipe = self.redis.pipeline()
        pipe.setex(f"{KEY_PREFIX}cooldown_until", ttl, until)
        pipe.setex(f"{KEY_PREFIX}trigger_reason", ttl, reason)
        pipe.execute()

    def clear(self):
        logger.info("Backpressure cleared")
        self.redis.delete(f"{KEY_PREFIX}cooldown_until", f"{KEY_PREFIX}trigger_reason")

    def evaluate(self) -> Regime:
        """Current regime; samples unless a cooldown is running"""
        if self.is_active():
            return Regime.BACKPRESSURE_ACTIVE
        if self.redis.get(f"{KEY_PREFIX}cooldown_until"):
            # cooldown expired, a fresh sample decides whether to resume
            self.clear()

        sample = self.sample()
        regime = self.classify(sample)
        if regime == Regime.BACKPRESSURE_ACTIVE:
            if not sample.probe_ok:
                reason = f"Store error: {sample.probe_error}"
            elif sample.latency_ms > self.config.latency_unhealthy_ms:
                reason = f"High store latency: {sample.latency_ms:.0f}ms"
            else:
                reason = f"High error rate: {sample.error_rate:.1f}%"
            self.trigger(reason)
        elif regime == Regime.DEGRADED:
            logger.info(f"Degraded mode: latency {sample.latency_ms:.0f}ms, error rate {sample.error_rate:.1f}%")
        return regime

    def status(self) -> BackpressureStatus:
        remaining = self.cooldown_remaining()
        if remaining:
            regime = Regime.BACKPRESSURE_ACTIVE
        elif self.last_sample is not None:
            regime = self.classify(self.last_sample)
        else:
            regime = Regime.HEALTHY
        reason = self.redis.get(f"{KEY_PREFIX}trigger_reason") if remaining else None
        if isinstance(reason, bytes):
            reason = reason.decode()
        return BackpressureStatus(
            regime=regime,
            cooldown_until=datetime.utcfromtimestamp(self.clock() + remaining) if remaining else None,
            cooldown_remaining_seconds=remaining,
            trigger_reason=reason,
            last_sample=self.last_sample,
        )

    # -------------------------------------------------------------- limits

    def concurrency_cap(self, regime: Regime) -> int:
        if regime == Regime.BACKPRESSURE_ACTIVE:
            return 0
        if regime == Regime.DEGRADED:
            return self.config.degraded_concurrent_jobs
        return self.config.max_concurrent_jobs

    def effective_chunk_size(self, chunk_size: int, regime: Regime) -> int:
        if regime == Regime.DEGRADED:
            return max(1, int(chunk_size * self.config.degraded_chunk_factor))
        return chunk_size


_controller: Optional[BackpressureController] = None


def get_backpressure() -> BackpressureController:
    """Get or create the process-wide controller"""
    global _controller
    if _controller is None:
        from database import store_probe

        _controller = BackpressureController(redis.from_url(settings.redis_url), probe=store_probe)
    return _controller

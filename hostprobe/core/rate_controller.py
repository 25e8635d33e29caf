"""
Adaptive Rate Controller

Feedback-driven request rate governor shared by every concurrent probe of
a sweep.

FEATURES:
- One-second request window with slot scheduling (no bursty drift)
- Multiplicative grow / backoff driven by success rate and latency
- Adjustment self-throttled to once per interval
- Thread-safe: all state lives behind a single lock

The rate always stays within [min_rate, max_rate]. When the feedback is
ambiguous the controller shrinks rather than grows.
"""

import asyncio
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional

logger = logging.getLogger(__name__)


DEFAULT_MAX_RATE = 1000
DEFAULT_MIN_RATE = 100
DEFAULT_ADJUSTMENT_INTERVAL = 0.1  # seconds
DEFAULT_OUTCOME_WINDOW = 50
WINDOW_SECONDS = 1.0


@dataclass
class RateThresholds:
    """
    Tunable cut-offs for rate adjustment.

    Latencies are in seconds. The defaults are empirical, not derived.
    """
    grow_success_rate: float = 0.95
    grow_latency: float = 0.050
    grow_factor: float = 1.2
    shrink_success_rate: float = 0.9
    shrink_latency: float = 0.200
    shrink_factor: float = 0.8
    nudge_success_rate: float = 0.8
    nudge_latency: float = 0.100
    nudge_factor: float = 1.1


@dataclass
class RateState:
    """Point-in-time copy of a controller's state."""
    current_rate: float
    min_rate: float
    max_rate: float
    target_rate: float
    window_requests: int
    window_second: int
    last_adjustment: Optional[float]
    total_requests: int
    successes: int
    failures: int


class RateController:
    """
    Adaptive request-rate controller.

    Every probe calls ``await wait()`` before touching the network and
    ``record_outcome()`` after. Both are safe to call from any number of
    concurrent tasks or threads.

    Usage:
        controller = RateController(max_rate=1000, min_rate=100)
        await controller.wait()
        ...probe...
        controller.record_outcome(success=True, latency=0.012)
    """

    def __init__(self,
                 max_rate: float = DEFAULT_MAX_RATE,
                 min_rate: float = DEFAULT_MIN_RATE,
                 adjustment_interval: float = DEFAULT_ADJUSTMENT_INTERVAL,
                 thresholds: Optional[RateThresholds] = None,
                 outcome_window: int = DEFAULT_OUTCOME_WINDOW,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Initialize the controller.

        Args:
            max_rate: Upper bound (and starting value) in requests/second
            min_rate: Lower bound in requests/second (must be > 0)
            adjustment_interval: Minimum seconds between recomputations
            thresholds: Adjustment cut-offs (defaults if None)
            outcome_window: Number of recent outcomes the success rate covers
            clock: Monotonic time source
            sleep: Coroutine used to delay throttled callers
        """
        if min_rate <= 0:
            raise ValueError(f"min_rate must be > 0, got {min_rate}")
        if max_rate < min_rate:
            raise ValueError(f"max_rate {max_rate} is below min_rate {min_rate}")

        self._min_rate = float(min_rate)
        self._max_rate = float(max_rate)
        self._current_rate = float(max_rate)
        self._target_rate = float(max_rate)
        self._interval = max(0.0, adjustment_interval)
        self.thresholds = thresholds or RateThresholds()

        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._epoch = clock()
        self._window_second = 0
        self._window_requests = 0
        self._next_slot = self._epoch
        self._total_requests = 0

        self._outcomes: Deque[bool] = deque(maxlen=max(1, outcome_window))
        self._successes = 0
        self._failures = 0
        self._last_adjustment: Optional[float] = None

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def current_rate(self) -> float:
        with self._lock:
            return self._current_rate

    @property
    def min_rate(self) -> float:
        return self._min_rate

    @property
    def max_rate(self) -> float:
        return self._max_rate

    @property
    def total_requests(self) -> int:
        with self._lock:
            return self._total_requests

    @property
    def requests_per_second(self) -> int:
        """Requests counted in the current one-second window."""
        with self._lock:
            return self._window_requests

    def snapshot(self) -> RateState:
        with self._lock:
            return RateState(
                current_rate=self._current_rate,
                min_rate=self._min_rate,
                max_rate=self._max_rate,
                target_rate=self._target_rate,
                window_requests=self._window_requests,
                window_second=self._window_second,
                last_adjustment=self._last_adjustment,
                total_requests=self._total_requests,
                successes=self._successes,
                failures=self._failures,
            )

    # =========================================================================
    # THROTTLING
    # =========================================================================

    def _reserve(self) -> float:
        """Count one request and return how long its caller must wait."""
        with self._lock:
            now = self._clock()
            second = int(math.floor(now - self._epoch)) if now >= self._epoch else -1

            if second != self._window_second:
                # New window (or the clock went backwards): start over
                if second < 0:
                    self._epoch = now
                    second = 0
                self._window_second = second
                self._window_requests = 0
                self._next_slot = now

            self._window_requests += 1
            self._total_requests += 1

            if self._window_requests <= self._current_rate:
                return 0.0

            self._next_slot = max(now, self._next_slot) + 1.0 / self._current_rate
            return min(self._next_slot - now, WINDOW_SECONDS)

    async def wait(self) -> float:
        """
        Suspend the caller until the current rate allows another request.

        Returns:
            Seconds the caller was delayed (0.0 when not throttled)
        """
        delay = self._reserve()
        if delay > 0:
            await self._sleep(delay)
        return delay

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    def _next_rate(self, rate: float, success_rate: float, latency: float) -> float:
        t = self.thresholds
        if success_rate < t.shrink_success_rate or latency > t.shrink_latency:
            return rate * t.shrink_factor
        if success_rate > t.grow_success_rate and latency < t.grow_latency:
            return rate * t.grow_factor
        if success_rate > t.nudge_success_rate and latency < t.nudge_latency:
            return rate * t.nudge_factor
        return rate

    def record_outcome(self, success: bool, latency: Optional[float] = None) -> float:
        """
        Feed one probe outcome into the adjustment loop.

        Args:
            success: Whether the probe got a definitive answer
            latency: Probe round-trip in seconds

        Returns:
            The current rate after this observation
        """
        try:
            latency = float(latency) if latency is not None else 0.0
        except (TypeError, ValueError):
            latency = 0.0
        if math.isnan(latency) or latency < 0:
            latency = 0.0

        with self._lock:
            self._outcomes.append(bool(success))
            if success:
                self._successes += 1
            else:
                self._failures += 1

            now = self._clock()
            if self._last_adjustment is not None:
                elapsed = now - self._last_adjustment
                # Negative elapsed means clock skew: adjust rather than stall
                if 0 <= elapsed < self._interval:
                    return self._current_rate

            success_rate = sum(self._outcomes) / len(self._outcomes)
            new_rate = self._next_rate(self._current_rate, success_rate, latency)
            new_rate = min(self._max_rate, max(self._min_rate, new_rate))

            if new_rate != self._current_rate:
                logger.debug(
                    f"Rate {self._current_rate:.1f} -> {new_rate:.1f} req/s "
                    f"(success={success_rate:.2f}, latency={latency * 1000:.1f}ms)"
                )

            self._target_rate = new_rate
            self._current_rate = new_rate
            self._last_adjustment = now
            return new_rate

    def reset(self) -> None:
        """Return to max_rate and forget all outcomes."""
        with self._lock:
            now = self._clock()
            self._current_rate = self._max_rate
            self._target_rate = self._max_rate
            self._epoch = now
            self._window_second = 0
            self._window_requests = 0
            self._next_slot = now
            self._outcomes.clear()
            self._successes = 0
            self._failures = 0
            self._last_adjustment = None


__all__ = [
    'RateController',
    'RateThresholds',
    'RateState',
    'DEFAULT_MAX_RATE',
    'DEFAULT_MIN_RATE',
]

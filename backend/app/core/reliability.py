"""
Reliability utilities.

Circuit breaker guarding calls to the payment processor.
"""

import time
from typing import Callable, Any, Tuple, Type


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    After 'failure_threshold' consecutive failures
    the circuit opens and rejects calls for 'reset_timeout' seconds.

    Exceptions listed in 'ignored' pass through without counting as failures
    (a declined card is the customer's problem, not an outage).
    """
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: int = 60,
        ignored: Tuple[Type[BaseException], ...] = (),
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.ignored = ignored
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
        except self.ignored:
            if self.state == "HALF_OPEN":
                self.reset_state()
            raise
        except Exception:
            self.record_failure()
            raise

        # Only consecutive failures count
        if self.state == "HALF_OPEN" or self.failures:
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"

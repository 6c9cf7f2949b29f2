"""Backoff between failed attempts of a workflow step.

A step gets ``1 + max_retries`` attempts. Between two attempts the engine
sleeps for ``compute_delay(n)`` seconds, where ``n`` is the number of
attempts that have failed so far. The default policy waits a fixed
2 seconds; exponential and linear backoff are available per workflow
through ``WorkflowOptions.retry_policy``.

Usage:
    strategy = RetryStrategy.build("fixed", max_retries=2, delay=2.0)
    failed = 0
    while True:
        try:
            return await attempt()
        except Exception as e:
            failed += 1
            if not strategy.should_retry(failed, e):
                raise
            await asyncio.sleep(strategy.compute_delay(failed))
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RetryPolicy(str, Enum):
    """How the wait grows from one retry to the next."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Retry budget and backoff for one workflow's steps.

    ``retryable_errors`` optionally narrows retries to exception class
    names (``["TimeoutError", "ConnectionError"]``); empty means every
    failure is retried.
    """
    policy: RetryPolicy
    max_retries: int = 0
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> "RetryStrategy":
        """Single attempt, no waiting."""
        return cls(policy=RetryPolicy.NONE, base_delay=0.0)

    @classmethod
    def fixed(cls, max_retries: int = 1, delay: float = 2.0) -> "RetryStrategy":
        return cls(policy=RetryPolicy.FIXED, max_retries=max_retries, base_delay=delay)

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = True,
    ) -> "RetryStrategy":
        """Doubles the wait after every failure, ±50% when ``jitter`` is set."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(cls, max_retries: int = 3, base_delay: float = 2.0, max_delay: float = 30.0) -> "RetryStrategy":
        """``base_delay * n`` after the n-th failure."""
        return cls(policy=RetryPolicy.LINEAR, max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)

    @classmethod
    def build(
        cls,
        policy: str,
        max_retries: int,
        delay: float,
        jitter: bool = False,
        retryable_errors: Optional[list[str]] = None,
    ) -> "RetryStrategy":
        """Strategy for a workflow's ``retry_*`` options.

        Raises ``ValueError`` for an unknown policy name.
        """
        policy = RetryPolicy(policy)
        if max_retries <= 0 or policy == RetryPolicy.NONE:
            return cls.none()
        if policy == RetryPolicy.EXPONENTIAL:
            strategy = cls.exponential(max_retries=max_retries, base_delay=delay, jitter=jitter)
        elif policy == RetryPolicy.LINEAR:
            strategy = cls.linear(max_retries=max_retries, base_delay=delay)
        else:
            strategy = cls.fixed(max_retries=max_retries, delay=delay)
        strategy.jitter = jitter
        strategy.retryable_errors = list(retryable_errors or [])
        return strategy

    @property
    def max_attempts(self) -> int:
        return 1 + max(self.max_retries, 0)

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "max_retries": self.max_retries,
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
            "retryable_errors": list(self.retryable_errors),
        }

    def compute_delay(self, failed_attempts: int) -> float:
        """Seconds to wait after ``failed_attempts`` failures (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (failed_attempts - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * failed_attempts
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            delay = max(0.0, delay * random.uniform(0.5, 1.5))
        return round(delay, 3)

    def should_retry(self, failed_attempts: int, error: Optional[BaseException] = None) -> bool:
        """Whether another attempt follows ``failed_attempts`` failures."""
        if self.policy == RetryPolicy.NONE or failed_attempts > self.max_retries:
            return False
        if error is None or not self.retryable_errors:
            return True
        return type(error).__name__ in self.retryable_errors

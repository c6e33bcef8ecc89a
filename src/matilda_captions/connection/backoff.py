#!/usr/bin/env python3
"""Reconnect backoff for caption transports.

Both the backend stream and the recognition session retry with capped
exponential backoff plus random jitter. The attempt counter resets on
every successful open and the tracker reports exhaustion once the retry
budget is spent.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class BackoffState(Enum):
    """States of a reconnect tracker."""

    IDLE = "idle"  # Connected, no failures pending
    RETRYING = "retrying"  # Failures recorded, budget left
    EXHAUSTED = "exhausted"  # Gave up


@dataclass
class ReconnectPolicy:
    """Configuration for reconnect behavior."""

    max_retries: int = 5  # Attempts before giving up
    base_delay_ms: int = 1000  # Delay unit for the exponential curve
    max_delay_ms: int = 30000  # Cap on any single delay
    jitter_ms: int = 1000  # Upper bound of the random jitter
    immediate_first: bool = False  # First retry fires without waiting

    @classmethod
    def from_settings(cls, settings: dict, immediate_first: bool = False) -> "ReconnectPolicy":
        """Build from a ``reconnect`` config table."""
        return cls(
            max_retries=int(settings.get("max_retries", 5)),
            base_delay_ms=int(settings.get("base_delay_ms", 1000)),
            max_delay_ms=int(settings.get("max_delay_ms", 30000)),
            jitter_ms=int(settings.get("jitter_ms", 1000)),
            immediate_first=immediate_first,
        )

    def delay_ms(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (0-based).

        Args:
            attempt: Number of retries already made since the last open
            rng: Source of uniform [0, 1) values for jitter

        Returns:
            Delay in milliseconds, never above max_delay_ms

        """
        if self.immediate_first:
            if attempt == 0:
                return 0.0
            attempt -= 1
        jitter = rng() * self.jitter_ms if self.jitter_ms > 0 else 0.0
        return min(float(self.max_delay_ms), (2**attempt) * self.base_delay_ms + jitter)


class Backoff:
    """Attempt tracker for one transport."""

    def __init__(self, policy: ReconnectPolicy | None = None, rng: Callable[[], float] = random.random):
        """Initialize backoff tracker.

        Args:
            policy: Reconnect policy (uses defaults if not provided)
            rng: Jitter source, injectable for tests

        """
        self.policy = policy or ReconnectPolicy()
        self.rng = rng
        self.attempt = 0
        self.last_failure_time = 0.0

    @property
    def state(self) -> BackoffState:
        if self.exhausted:
            return BackoffState.EXHAUSTED
        if self.attempt > 0:
            return BackoffState.RETRYING
        return BackoffState.IDLE

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_retries

    def record_success(self):
        """Record a successful open."""
        self.attempt = 0

    def next_delay(self) -> float | None:
        """Consume one attempt.

        Returns:
            Delay in seconds before the next attempt, or None once the budget is spent

        """
        if self.exhausted:
            return None
        delay_ms = self.policy.delay_ms(self.attempt, self.rng)
        self.attempt += 1
        self.last_failure_time = time.time()
        return delay_ms / 1000.0

    def reset(self):
        self.attempt = 0
        self.last_failure_time = 0.0

    def get_status(self) -> dict:
        """Get current backoff status for monitoring.

        Returns:
            Dictionary with backoff state information

        """
        return {
            "state": self.state.value,
            "attempt": self.attempt,
            "max_retries": self.policy.max_retries,
            "last_failure_time": self.last_failure_time,
        }

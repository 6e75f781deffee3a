"""Caller-side retry policy for GitHub API calls.

The provider client never retries on its own; discovery and the sync stages
wrap their calls with :func:`call_with_retry` so rate limits and transient
network failures back off exponentially with jitter, while authentication
and not-found errors surface immediately.
"""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

import yaml
from pydantic import BaseModel, Field

from repomirror.errors import ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Exponential backoff policy for retryable provider errors.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for any single delay
        backoff_multiplier: Growth factor between attempts
        jitter_factor: Random +/- fraction applied to each delay
    """

    max_attempts: int = Field(default=4, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0, le=600.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0, le=3600.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter_factor: float = Field(default=0.25, ge=0.0, le=1.0)

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed
            retry_after: Server-provided wait hint in seconds, if any

        Returns:
            Delay in seconds with jitter applied
        """
        delay = min(
            self.base_delay_seconds * (self.backoff_multiplier ** attempt),
            self.max_delay_seconds,
        )
        if self.jitter_factor > 0 and delay > 0:
            jitter = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter, jitter))
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay_seconds))
        return delay


def load_retry_policy(path: Path) -> RetryPolicy:
    """Load a retry policy from a YAML file.

    The file may either hold the policy fields at top level or nest them
    under a ``github`` key.
    """
    data = yaml.safe_load(path.read_text()) or {}
    if "github" in data:
        data = data["github"] or {}
    return RetryPolicy.model_validate(data)


def call_with_retry(
    func: Callable[..., T],
    *args,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """Invoke ``func`` and retry retryable provider errors.

    Args:
        func: Callable performing one provider request
        policy: Backoff policy (defaults to :class:`RetryPolicy`)
        sleep: Sleep function, injectable for tests

    Returns:
        Whatever ``func`` returns

    Raises:
        ProviderError: The last error once attempts are exhausted, or the
            first non-retryable error
    """
    policy = policy or RetryPolicy()

    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except ProviderError as exc:
            attempt += 1
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
            delay = policy.calculate_delay(attempt - 1, retry_after)
            logger.warning(
                f"Retryable GitHub error ({exc.code}), retrying in {delay:.1f}s",
                extra={
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "path": exc.path,
                },
            )
            sleep(delay)


__all__ = ["RetryPolicy", "call_with_retry", "load_retry_policy"]

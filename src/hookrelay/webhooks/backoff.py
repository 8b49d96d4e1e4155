"""Retry delay computation."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from hookrelay.config import RetryPolicy


def base_delay(policy: RetryPolicy, attempts: int) -> float:
    """Un-jittered delay after ``attempts`` completed attempts.

    Non-decreasing in ``attempts`` and bounded by the policy cap:
    30s, 60s, 120s, ... up to max_delay_seconds with the defaults.
    """
    exponent = max(attempts - 1, 0)
    # Cap the exponent before multiplying to avoid float overflow on huge counts
    if exponent > 64:
        return policy.max_delay_seconds
    return min(policy.max_delay_seconds, policy.base_delay_seconds * (2**exponent))


def compute_backoff(
    policy: RetryPolicy,
    attempts: int,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before the next attempt.

    Args:
        policy: Retry policy.
        attempts: Attempts completed so far (>= 1).
        retry_after: Delay requested by the endpoint, honoured up to the cap.
        rng: Random source for jitter.

    Returns:
        Jittered delay within [base_delay_seconds, max_delay_seconds].
    """
    delay = base_delay(policy, attempts)
    if policy.jitter:
        spread = (rng or random).uniform(-policy.jitter, policy.jitter)
        delay *= 1 + spread
    if retry_after is not None and retry_after > delay:
        delay = retry_after
    return max(policy.base_delay_seconds, min(policy.max_delay_seconds, delay))


def next_retry_time(
    policy: RetryPolicy,
    attempts: int,
    now: datetime,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> datetime:
    """Absolute time of the next attempt."""
    return now + timedelta(seconds=compute_backoff(policy, attempts, retry_after, rng))

"""
workflow/retry.py

Bounded retry: a fixed number of attempts, each with its own timeout,
separated by a fixed delay. Used by the connectivity gate and the tunnel
service activation check.
"""

import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    attempt_timeout: float
    delay: float


# Connectivity gate: up to 12 tries, 10 s connect timeout, 15 s apart (~3 min)
GATE_POLICY = RetryPolicy(max_attempts=12, attempt_timeout=10, delay=15)

# Tunnel service grace period after `systemctl start`
SERVICE_GRACE_POLICY = RetryPolicy(max_attempts=3, attempt_timeout=10, delay=5)


def retry(attempt: Callable[[float], bool], policy: RetryPolicy,
          sleep: Callable[[float], None] = time.sleep,
          on_failure: Callable[[int, int], None] = lambda n, total: None) -> int:
    """
    Call attempt(timeout) until it returns True or attempts run out.

    No sleep follows the final attempt.

    Returns:
        The 1-based number of the successful attempt, or 0 if all failed.
    """
    for number in range(1, policy.max_attempts + 1):
        if attempt(policy.attempt_timeout):
            return number
        on_failure(number, policy.max_attempts)
        if number < policy.max_attempts:
            sleep(policy.delay)
    return 0

"""
Error-classified retry policy with exponential backoff.
"""

import random
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from ..config import RetryConfig, RetryPolicy, default_retry_policies
from ..types import ErrorClassification, FATAL_CLASSIFICATIONS
from .exceptions import ScraperError


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay_ms: int = 0


NO_RETRY = RetryDecision(should_retry=False, delay_ms=0)


class RetryPolicyEngine:
    """
    Maps an error classification and attempt number to a retry decision.

    ``attempt_number`` is 1 for the first retry. The delay before retry N is
    ``min(max_delay_ms, base_delay_ms * backoff_factor ** (N - 1))``. Jitter,
    when enabled, only ever shortens that delay, so the ceiling holds.
    """

    def __init__(
        self,
        policies: Optional[Mapping[ErrorClassification, RetryPolicy]] = None,
        jitter_ratio: float = 0.0,
        rng: Callable[[], float] = random.random,
    ):
        if not 0.0 <= jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")
        self.policies: Dict[ErrorClassification, RetryPolicy] = default_retry_policies()
        if policies:
            self.policies.update(policies)
        self.jitter_ratio = jitter_ratio
        self._rng = rng

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicyEngine":
        return cls(config.policies, jitter_ratio=config.jitter_ratio)

    def policy_for(self, classification: ErrorClassification) -> RetryPolicy:
        return self.policies[ErrorClassification(classification)]

    def backoff_ms(self, policy: RetryPolicy, attempt_number: int) -> int:
        """Ceiling delay for retry ``attempt_number`` under ``policy``."""
        delay = policy.base_delay_ms * (policy.backoff_factor ** (attempt_number - 1))
        return int(min(policy.max_delay_ms, delay))

    def decide(self, classification: ErrorClassification, attempt_number: int) -> RetryDecision:
        """
        Decide whether retry ``attempt_number`` may run and after what delay.

        Args:
            classification: Classification of the error that just occurred
            attempt_number: 1-based index of the retry being considered

        Returns:
            RetryDecision; authentication and security errors never retry.
        """
        if attempt_number < 1:
            raise ValueError("attempt_number starts at 1")

        classification = ErrorClassification(classification)
        if classification in FATAL_CLASSIFICATIONS:
            return NO_RETRY

        policy = self.policy_for(classification)
        if attempt_number > policy.max_retries:
            return NO_RETRY

        delay = self.backoff_ms(policy, attempt_number)
        if self.jitter_ratio:
            delay = int(delay * (1.0 - self.jitter_ratio * self._rng()))
        return RetryDecision(should_retry=True, delay_ms=delay)

    def decide_for(self, error: ScraperError, attempt_number: int) -> RetryDecision:
        """Like decide(), but honours errors flagged fatal (resource budget violations)."""
        if error.fatal:
            return NO_RETRY
        return self.decide(error.kind, attempt_number)

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for enforcement calls."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    conflict_retries: int = 3

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based).

        A server-provided retry_after is a floor: the retry never happens
        before it, even when it exceeds max_delay.
        """
        delay = min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)
        if retry_after is not None:
            delay = max(delay, float(retry_after))
        return max(0.0, delay)

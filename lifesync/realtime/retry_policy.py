"""
Exponential backoff shared by reconnects and subscription retries.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attempts are 1-indexed: the first retry waits base_delay, each later one
    doubles it, and no delay exceeds max_delay.
    """

    max_attempts: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given attempt number.

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in seconds: min(base_delay * base**(attempt - 1), max_delay)
        """
        exponent = max(0, attempt - 1)
        delay = self.base_delay * (self.exponential_base**exponent)
        return min(delay, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        """Return True once attempt exceeds the budget."""
        return attempt > self.max_attempts

    def schedule(self) -> list[float]:
        """Full delay sequence for attempts 1..max_attempts."""
        return [self.calculate_delay(attempt) for attempt in range(1, self.max_attempts + 1)]

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectSuggestion:
    """A retry offered to collaborators after a lost connection.

    Attributes:
        attempt (int): 1-based number of the retry being suggested.
        max_attempts (int): Total retries the policy allows.
        delay (float): Seconds to wait before retrying.
    """
    attempt: int
    max_attempts: int
    delay: float


class ReconnectPolicy:
    """
    Decides whether and when to retry after an unclean closure.

    Delays grow geometrically from `initial_delay` by `backoff`, capped at
    `max_delay`. After `max_attempts` consecutive failures no further retry is
    suggested; a successful connection resets the count.
    """
    def __init__(self, max_attempts: int = 3, initial_delay: float = 5.0,
                 backoff: float = 1.5, max_delay: float = 60.0):
        if max_attempts < 0:
            raise ValueError("max_attempts must not be negative")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff = backoff
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        """Returns the delay before the given 1-based attempt."""
        delay = self.initial_delay * (self.backoff ** max(0, attempt - 1))
        return min(delay, self.max_delay)

    def suggest(self, attempts_made: int) -> Optional[ReconnectSuggestion]:
        """
        Args:
            attempts_made: Reconnect attempts already made since the last
                           successful connection.

        Returns:
            The next suggestion, or None once the attempts are exhausted.
        """
        next_attempt = attempts_made + 1
        if next_attempt > self.max_attempts:
            logger.info(f"ReconnectPolicy: {attempts_made} attempts made, giving up.")
            return None
        return ReconnectSuggestion(
            attempt=next_attempt,
            max_attempts=self.max_attempts,
            delay=self.delay_for(next_attempt),
        )

"""Base Celery task with exponential backoff retries."""

import math

from celery import Task


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-indexed), capped at max_delay."""
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


RETRY_CONFIGS = {
    "processing": RetryConfig(max_attempts=3, initial_delay=10.0, max_delay=120.0, backoff_multiplier=2),
    "maintenance": RetryConfig(max_attempts=2, initial_delay=60.0, max_delay=300.0, backoff_multiplier=2),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


class BaseTaskWithRetry(Task):
    """Celery task that retries infrastructure failures with backoff."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def retry_with_backoff(self, exc: Exception) -> None:
        """Schedule another attempt of the current task.

        Raises:
            MaxRetriesExceededError: If max attempts have been reached
            Retry: Otherwise, to hand the task back to the broker
        """
        config = self.retry_config
        attempt = self.request.retries + 1

        if attempt >= config.max_attempts:
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for task"
            ) from exc

        raise self.retry(exc=exc, countdown=config.calculate_delay(attempt), max_retries=config.max_attempts)

from dataclasses import dataclass

from fulfillment_service.core.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 5.0
    max_delay: float = 300.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.job_max_attempts,
            base_delay=settings.job_backoff_base_seconds,
            max_delay=settings.job_backoff_max_seconds,
        )

    def is_retryable(self, error: BaseException) -> bool:
        # Anything outside the taxonomy is an unexpected automation failure.
        return getattr(error, "retryable", True)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return self.is_retryable(error) and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

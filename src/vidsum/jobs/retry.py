"""Retry policy: decides whether a failed job may be requeued."""

from datetime import datetime, timedelta
from typing import Optional

from .models import JobStatus, ProcessingJob


def can_retry(job: ProcessingJob) -> bool:
    """A job may be retried only while failed and with retries remaining."""
    return job.status == JobStatus.FAILED and job.retry_count < job.max_retries


class RetryPolicy:
    """Retry decisions plus an optional exponential backoff.

    With ``backoff_base_s == 0`` (the default) a retried job is claimable
    immediately. Otherwise the n-th retry waits ``base * 2**n`` seconds,
    capped at ``backoff_max_s``.
    """

    def __init__(self, backoff_base_s: float = 0.0, backoff_max_s: float = 300.0):
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s

    @classmethod
    def from_config(cls, retry_config) -> "RetryPolicy":
        return cls(
            backoff_base_s=retry_config.backoff_base_s,
            backoff_max_s=retry_config.backoff_max_s,
        )

    def can_retry(self, job: ProcessingJob) -> bool:
        return can_retry(job)

    def backoff_delay(self, retry_count: int) -> float:
        """Delay in seconds before the given retry becomes claimable."""
        if self.backoff_base_s <= 0:
            return 0.0
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** retry_count))

    def available_at(self, job: ProcessingJob, now: datetime) -> Optional[datetime]:
        """When the retried job becomes claimable (None = immediately)."""
        delay = self.backoff_delay(job.retry_count)
        if delay <= 0:
            return None
        return now + timedelta(seconds=delay)

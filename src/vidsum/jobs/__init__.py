"""Processing job orchestration: state machine, dispatcher, workers."""

from .backends import JobStore, Publisher, QueueBackend
from .coordinator import JobCoordinator
from .models import (
    JobError,
    JobStatus,
    JobType,
    ProcessingJob,
    ProcessingOptions,
    QueueName,
    StageName,
    StageRecord,
    StageStatus,
)
from .notifications import InMemoryPublisher, NotificationBus, video_topic
from .progress import compute_overall_progress, estimate_remaining_seconds
from .retry import RetryPolicy, can_retry
from .sqlite_backend import SQLiteJobStore, SQLiteQueue
from .sweeper import ExpirySweeper, fail_stale_processing, sweep
from .worker import JobWorkerPool, StageExecutor

__all__ = [
    "JobStore",
    "QueueBackend",
    "Publisher",
    "JobCoordinator",
    "JobError",
    "JobStatus",
    "JobType",
    "ProcessingJob",
    "ProcessingOptions",
    "QueueName",
    "StageName",
    "StageRecord",
    "StageStatus",
    "InMemoryPublisher",
    "NotificationBus",
    "video_topic",
    "compute_overall_progress",
    "estimate_remaining_seconds",
    "RetryPolicy",
    "can_retry",
    "SQLiteJobStore",
    "SQLiteQueue",
    "ExpirySweeper",
    "fail_stale_processing",
    "sweep",
    "JobWorkerPool",
    "StageExecutor",
]

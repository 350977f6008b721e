"""
Job coordinator: the orchestrator's state machine front door.

The coordinator owns no job state. Each operation loads the current
snapshot inside a store write transaction, applies a pure transition from
``state.py``, persists the result, and only then publishes notifications
and mirrors the status onto the video. Every operation accepts either a
job snapshot or a job id.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..errors import InvalidStateError, NotFoundError, StageExecutionError
from ..models import OrchestratorConfig
from . import notifications as events
from . import state
from .backends import JobStore, QueueBackend
from .models import (
    JobError,
    JobStatus,
    JobType,
    ProcessingJob,
    QueueName,
    StageName,
    StageStatus,
    utcnow,
)
from .notifications import NotificationBus
from .retry import RetryPolicy, can_retry

logger = logging.getLogger(__name__)

JobRef = Union[ProcessingJob, str]
ErrorLike = Union[JobError, Mapping[str, Any], BaseException, str]


def _job_id(job: JobRef) -> str:
    return job.id if isinstance(job, ProcessingJob) else job


def to_job_error(error: ErrorLike, now: datetime) -> JobError:
    """Normalize the many shapes a stage failure arrives in."""
    if isinstance(error, JobError):
        return error
    if isinstance(error, StageExecutionError):
        return JobError(message=error.message, code=error.code, timestamp=now)
    if isinstance(error, BaseException):
        return JobError(
            message=str(error) or type(error).__name__,
            code=getattr(error, "code", None) or "PROCESSING_ERROR",
            timestamp=now,
        )
    if isinstance(error, Mapping):
        return JobError(
            message=str(error.get("message") or "Unknown error"),
            code=error.get("code") or "PROCESSING_ERROR",
            timestamp=now,
        )
    return JobError(message=str(error), timestamp=now)


class JobCoordinator:
    """Creates, dispatches, claims and advances processing jobs.

    Dependencies are injected; their lifecycle (opening and closing the
    database, starting workers) belongs to the process entry point.
    """

    def __init__(
        self,
        store: JobStore,
        queue: QueueBackend,
        bus: Optional[NotificationBus] = None,
        config: Optional[OrchestratorConfig] = None,
        video_store: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.bus = bus or NotificationBus()
        self.config = config or OrchestratorConfig()
        self.video_store = video_store
        self.clock = clock
        self.retry_policy = RetryPolicy.from_config(self.config.retry)
        self.weights = self.config.progress.weights

    # ----- lookups -------------------------------------------------------

    def get_job(self, job: JobRef) -> ProcessingJob:
        """Load a job; expired records count as absent.

        Raises:
            NotFoundError: If the job does not exist
        """
        job_id = _job_id(job)
        found = self.store.get(job_id, now=self.clock())
        if found is None:
            raise NotFoundError("Job", job_id)
        return found

    def list_jobs(
        self, status: Optional[str] = None, video_id: Optional[str] = None
    ) -> List[ProcessingJob]:
        return self.store.list_jobs(status=status, video_id=video_id, now=self.clock())

    def can_retry(self, job: JobRef) -> bool:
        return can_retry(self.get_job(job))

    def queue_stats(self) -> Dict[str, Any]:
        return self.queue.stats()

    def transitions(self, job: JobRef):
        return self.store.transitions(_job_id(job))

    # ----- creation / dispatch --------------------------------------------

    def create(
        self,
        video_id: Optional[str],
        options: Optional[Mapping[str, Any]] = None,
        *,
        priority: Optional[int] = None,
        queue_name: Optional[str] = None,
        job_type: JobType = JobType.COMPLETE_PROCESSING,
        max_retries: Optional[int] = None,
    ) -> ProcessingJob:
        """Create a pending job with every stage pending.

        Raises:
            ValidationError: If video_id is missing or options are malformed
        """
        defaults = self.config.jobs
        job = state.new_job(
            video_id,
            self.clock(),
            job_type=JobType(job_type),
            queue_name=QueueName(queue_name or defaults.default_queue),
            priority=defaults.default_priority if priority is None else priority,
            max_retries=self.config.retry.max_retries if max_retries is None else max_retries,
            options=options,
            ttl=timedelta(days=defaults.ttl_days),
        )
        self.store.insert(job)
        logger.info("Created job %s for video %s", job.id, job.video_id)
        self.bus.job_event(job, events.JOB_CREATED, queue_name=job.queue_name.value)
        return job

    def dispatch(self, job: JobRef) -> bool:
        """Enqueue a pending job on its queue. No-op if already enqueued.

        Returns:
            True if the job was newly enqueued
        """
        current = self.get_job(job)
        if current.status != JobStatus.PENDING:
            raise InvalidStateError(current.id, current.status.value, "dispatch")
        added = self.queue.enqueue(current)
        if added:
            logger.info("Dispatched job %s on %s", current.id, current.queue_name.value)
            self.bus.job_event(current, events.JOB_DISPATCHED, queue_name=current.queue_name.value)
        return added

    def create_job(
        self, video_id: Optional[str], options: Optional[Mapping[str, Any]] = None, **kwargs: Any
    ) -> ProcessingJob:
        """Create and immediately dispatch a job."""
        job = self.create(video_id, options, **kwargs)
        self.dispatch(job)
        return job

    # ----- claiming -------------------------------------------------------

    def claim(self, job: JobRef, worker_id: str) -> ProcessingJob:
        """Atomically move a pending job to processing for one worker.

        Raises:
            ConcurrencyError: If the job is not pending (already claimed)
            NotFoundError: If the job does not exist
        """
        claimed = self.queue.claim(_job_id(job), worker_id)
        self._on_claimed(claimed, worker_id)
        return claimed

    def claim_next(self, worker_id: str, queue_name: str = QueueName.VIDEO_PROCESSING.value):
        """Claim the best pending job of a queue, or None."""
        claimed = self.queue.claim_next(queue_name, worker_id)
        if claimed is not None:
            self._on_claimed(claimed, worker_id)
        return claimed

    def _on_claimed(self, job: ProcessingJob, worker_id: str) -> None:
        logger.info("Worker %s claimed job %s", worker_id, job.id)
        self._mirror_video_status(job, "processing")

    def heartbeat(self, job: JobRef) -> None:
        self.queue.update_heartbeat(_job_id(job))

    # ----- stage transitions ----------------------------------------------

    def advance_stage(
        self, job: JobRef, stage: Any, progress: int, stage_status: Any
    ) -> ProcessingJob:
        """Update a stage's progress/status and recompute overall progress.

        Raises:
            ValidationError: Unknown stage/status or progress out of range
            InvalidStateError: Job failed, cancelled, or completed (non-cleanup stage)
        """
        now = self.clock()
        before, after = self.store.update(
            _job_id(job),
            lambda current: state.advance_stage(
                current, stage, progress, stage_status, now, self.weights
            ),
            now=now,
        )
        name = StageName.parse(stage)
        self.bus.job_event(
            after,
            events.STAGE_PROGRESS,
            stage=name.value,
            stage_status=after.stage(name).status.value,
            progress=after.stage(name).progress,
        )
        self._after_stage_change(before, after, name)
        return after

    def complete_stage(self, job: JobRef, stage: Any) -> ProcessingJob:
        """Mark a stage completed; completes the job once all weighted stages are."""
        now = self.clock()
        before, after = self.store.update(
            _job_id(job),
            lambda current: state.complete_stage(current, stage, now, self.weights),
            now=now,
        )
        self._after_stage_change(before, after, StageName.parse(stage))
        return after

    def fail_stage(self, job: JobRef, stage: Any, error: ErrorLike) -> ProcessingJob:
        """Mark a stage and the job failed, recording the error. Never retries."""
        now = self.clock()
        job_error = to_job_error(error, now)
        before, after = self.store.update(
            _job_id(job),
            lambda current: state.fail_stage(current, stage, job_error, now, self.weights),
            now=now,
        )
        self._after_stage_change(before, after, StageName.parse(stage))
        return after

    def record_external_refs(
        self, job: JobRef, stage: Any, refs: Mapping[str, Any]
    ) -> ProcessingJob:
        """Attach adapter metadata (transcription id, URLs, ...) to a stage."""
        now = self.clock()
        _, after = self.store.update(
            _job_id(job),
            lambda current: state.record_external_refs(current, stage, refs, now),
            now=now,
        )
        return after

    def _after_stage_change(
        self, before: ProcessingJob, after: ProcessingJob, stage: StageName
    ) -> None:
        old, new = before.stage(stage), after.stage(stage)

        if new.status == StageStatus.COMPLETED and old.status != StageStatus.COMPLETED:
            self.bus.job_event(after, events.STAGE_COMPLETED, stage=stage.value)
        elif new.status == StageStatus.FAILED and old.status != StageStatus.FAILED:
            message = after.error.message if after.error else new.error
            self.bus.job_event(after, events.STAGE_FAILED, stage=stage.value, error=message)

        if before.status == after.status:
            return

        if before.status == JobStatus.PENDING:
            # Finished without a claim: it must leave the pending set.
            self.queue.remove(after.id, after.queue_name.value)

        if after.status == JobStatus.COMPLETED:
            logger.info("Job %s completed", after.id)
            self.queue.enqueue(after, QueueName.CLEANUP.value)
            self.bus.job_event(after, events.JOB_COMPLETED)
            self._mirror_video_status(after, "completed")
        elif after.status == JobStatus.FAILED:
            logger.warning(
                "Job %s failed at %s: %s", after.id, stage.value,
                after.error.message if after.error else "unknown error",
            )
            self.bus.job_event(
                after,
                events.JOB_FAILED,
                stage=stage.value,
                error=after.error.model_dump(mode="json") if after.error else None,
                can_retry=can_retry(after),
            )
            self._mirror_video_status(after, "failed")

    # ----- client operations ----------------------------------------------

    def cancel(self, job: JobRef) -> ProcessingJob:
        """Cancel a pending or processing job; idempotent for cancelled jobs.

        Raises:
            InvalidStateError: If the job is completed or failed
        """
        now = self.clock()
        before, after = self.store.update(
            _job_id(job), lambda current: state.cancel(current, now), now=now
        )
        if before.status == after.status:
            return after

        self.queue.remove(after.id)
        logger.info("Job %s cancelled (was %s)", after.id, before.status.value)
        self.bus.job_event(after, events.JOB_CANCELLED, previous_status=before.status.value)
        self._mirror_video_status(after, "cancelled")
        return after

    def retry(self, job: JobRef) -> ProcessingJob:
        """Requeue a failed job that still has retries left.

        Raises:
            InvalidStateError: If the job is not failed
            TerminalError: If its retries are exhausted
        """
        now = self.clock()
        _, after = self.store.update(
            _job_id(job),
            lambda current: state.retry(
                current, now, self.retry_policy.available_at(current, now), self.weights
            ),
            now=now,
        )
        logger.info("Retrying job %s (%d/%d)", after.id, after.retry_count, after.max_retries)
        self.bus.job_event(
            after, events.JOB_RETRIED, retry_count=after.retry_count, max_retries=after.max_retries
        )
        if self.queue.enqueue(after):
            self.bus.job_event(after, events.JOB_DISPATCHED, queue_name=after.queue_name.value)
        return after

    def delete_job(self, job: JobRef) -> bool:
        """Remove a job record outright (e.g. its video was deleted)."""
        return self.store.delete(_job_id(job))

    def delete_jobs_for_video(self, video_id: str) -> int:
        return self.store.delete_for_video(video_id)

    # Id-based aliases used by the API layer.
    cancel_job = cancel
    retry_job = retry
    get_queue_stats = queue_stats

    # ----- collaborators --------------------------------------------------

    def _mirror_video_status(self, job: ProcessingJob, status: str) -> None:
        if self.video_store is None:
            return
        try:
            self.video_store.set_video_status(job.video_id, status)
        except Exception as e:
            logger.warning("Could not mirror status %s to video %s: %s", status, job.video_id, e)

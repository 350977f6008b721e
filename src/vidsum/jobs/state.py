"""
State transitions for processing jobs.

Every function here is pure: it takes an immutable ProcessingJob snapshot
and returns a new one (or raises). Persistence and notifications are the
coordinator's job; nothing in this module touches storage.

Job lifecycle: PENDING → PROCESSING → COMPLETED | FAILED | CANCELLED
               FAILED → PENDING (retry), PENDING|PROCESSING → CANCELLED

INVARIANT: COMPLETED and CANCELLED are terminal. The only stage that may
still move on a COMPLETED job is cleanup, and cleanup never changes the
job status.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, FrozenSet, Mapping, Optional, Set, Tuple

from ..errors import ConcurrencyError, InvalidStateError, TerminalError, ValidationError
from .models import (
    DEFAULT_TTL,
    PIPELINE_STAGES,
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
from .progress import compute_overall_progress

TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})

_JOB_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PENDING, JobStatus.COMPLETED),
    (JobStatus.PENDING, JobStatus.FAILED),
    (JobStatus.PENDING, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),
    (JobStatus.FAILED, JobStatus.PENDING),
}


def is_job_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_JOB_STATES


def can_transition_job(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Check if a job state transition is legal (staying put is always legal)."""
    if from_status == to_status:
        return True
    if is_job_terminal(from_status):
        return False
    return (from_status, to_status) in _JOB_TRANSITIONS


def _parse_stage(stage: Any) -> StageName:
    try:
        return StageName.parse(stage)
    except ValueError as e:
        raise ValidationError(str(e)) from None


def _parse_stage_status(status: Any) -> StageStatus:
    if isinstance(status, StageStatus):
        return status
    try:
        return StageStatus(status)
    except ValueError:
        raise ValidationError(
            f"Unknown stage status {status!r}; expected one of "
            f"{', '.join(s.value for s in StageStatus)}"
        ) from None


def _check_stage_mutable(job: ProcessingJob, stage: StageName, action: str) -> None:
    if job.status in (JobStatus.CANCELLED, JobStatus.FAILED):
        raise InvalidStateError(job.id, job.status.value, action)
    if job.status == JobStatus.COMPLETED and stage != StageName.CLEANUP:
        raise InvalidStateError(job.id, job.status.value, action)


def _with_stage(
    job: ProcessingJob,
    stage: StageName,
    record: StageRecord,
    now: datetime,
    weights: Optional[Mapping[str, float]],
    **changes: Any,
) -> ProcessingJob:
    stages = dict(job.stages)
    stages[stage.value] = record
    return job.model_copy(update={
        "stages": stages,
        "overall_progress": compute_overall_progress(stages, weights),
        "updated_at": now,
        **changes,
    })


def new_job(
    video_id: Optional[str],
    now: datetime,
    *,
    job_id: Optional[str] = None,
    job_type: JobType = JobType.COMPLETE_PROCESSING,
    queue_name: QueueName = QueueName.VIDEO_PROCESSING,
    priority: int = 0,
    max_retries: int = 3,
    options: Optional[Mapping[str, Any]] = None,
    ttl: timedelta = DEFAULT_TTL,
) -> ProcessingJob:
    """Build a fresh pending job with every stage pending and zero progress."""
    if video_id is None or not str(video_id).strip():
        raise ValidationError("video_id is required")
    try:
        return ProcessingJob(
            id=job_id or str(uuid.uuid4()),
            video_id=str(video_id),
            job_type=job_type,
            queue_name=queue_name,
            priority=priority,
            max_retries=max_retries,
            options=ProcessingOptions(**(options or {})),
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
        )
    except ValueError as e:
        # pydantic.ValidationError subclasses ValueError
        raise ValidationError(str(e)) from e


def claim(job: ProcessingJob, worker_id: str, now: datetime) -> ProcessingJob:
    """PENDING → PROCESSING, recording the claiming worker."""
    if job.status != JobStatus.PENDING:
        raise ConcurrencyError(job.id, job.status.value)
    if job.available_at is not None and job.available_at > now:
        raise ConcurrencyError(
            job.id,
            job.status.value,
            f"Job {job.id} is not yet available: retry backoff until {job.available_at.isoformat()}",
        )
    return job.model_copy(update={
        "status": JobStatus.PROCESSING,
        "worker_id": worker_id,
        "started_at": now,
        "last_heartbeat": now,
        "available_at": None,
        "updated_at": now,
    })


def advance_stage(
    job: ProcessingJob,
    stage: Any,
    progress: int,
    stage_status: Any,
    now: datetime,
    weights: Optional[Mapping[str, float]] = None,
) -> ProcessingJob:
    """Update one stage's progress/status and recompute overall progress.

    A ``completed`` status is routed through complete_stage and ``failed``
    through fail_stage so the job-level consequences always apply.
    """
    name = _parse_stage(stage)
    status = _parse_stage_status(stage_status)
    if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
        raise ValidationError(f"progress must be an integer in 0..100 (got {progress!r})")
    _check_stage_mutable(job, name, "advance")

    if status == StageStatus.COMPLETED:
        return complete_stage(job, name, now, weights)
    if status == StageStatus.FAILED:
        error = JobError(message=f"{name.value} stage reported failure", timestamp=now)
        return fail_stage(job, name, error, now, weights)

    current = job.stage(name)
    started_at = current.started_at
    if started_at is None and status != StageStatus.PENDING:
        started_at = now
    record = current.model_copy(update={
        "status": status,
        "progress": progress,
        "started_at": started_at,
    })
    return _with_stage(job, name, record, now, weights)


def record_external_refs(
    job: ProcessingJob, stage: Any, refs: Mapping[str, Any], now: datetime
) -> ProcessingJob:
    """Merge adapter metadata into a stage's external_refs."""
    name = _parse_stage(stage)
    current = job.stage(name)
    record = current.model_copy(update={"external_refs": {**current.external_refs, **refs}})
    stages = dict(job.stages)
    stages[name.value] = record
    return job.model_copy(update={"stages": stages, "updated_at": now})


def all_pipeline_stages_completed(job: ProcessingJob) -> bool:
    return all(job.stage(s).status == StageStatus.COMPLETED for s in PIPELINE_STAGES)


def complete_stage(
    job: ProcessingJob,
    stage: Any,
    now: datetime,
    weights: Optional[Mapping[str, float]] = None,
) -> ProcessingJob:
    """Mark a stage completed; complete the job once every weighted stage is."""
    name = _parse_stage(stage)
    _check_stage_mutable(job, name, "complete stage of")

    current = job.stage(name)
    record = current.model_copy(update={
        "status": StageStatus.COMPLETED,
        "progress": 100,
        "started_at": current.started_at or now,
        "completed_at": now,
    })
    updated = _with_stage(job, name, record, now, weights)

    if updated.status != JobStatus.COMPLETED and all_pipeline_stages_completed(updated):
        updated = updated.model_copy(update={
            "status": JobStatus.COMPLETED,
            "completed_at": now,
            "worker_id": None,
        })
    return updated


def fail_stage(
    job: ProcessingJob,
    stage: Any,
    error: JobError,
    now: datetime,
    weights: Optional[Mapping[str, float]] = None,
) -> ProcessingJob:
    """Mark a stage failed and the job failed. Never retries by itself.

    Cleanup is best-effort: a failed cleanup is recorded on its stage only
    and leaves the job status untouched.
    """
    name = _parse_stage(stage)
    _check_stage_mutable(job, name, "fail stage of")

    current = job.stage(name)
    record = current.model_copy(update={
        "status": StageStatus.FAILED,
        "started_at": current.started_at or now,
        "completed_at": now,
    })
    if name == StageName.CLEANUP:
        record = record.model_copy(update={"error": error.message})
        return _with_stage(job, name, record, now, weights)

    return _with_stage(
        job, name, record, now, weights,
        status=JobStatus.FAILED,
        error=error,
        worker_id=None,
    )


def cancel(job: ProcessingJob, now: datetime) -> ProcessingJob:
    """PENDING|PROCESSING → CANCELLED. Cancelling a cancelled job is a no-op."""
    if job.status == JobStatus.CANCELLED:
        return job
    if not can_transition_job(job.status, JobStatus.CANCELLED):
        raise InvalidStateError(job.id, job.status.value, "cancel")
    return job.model_copy(update={
        "status": JobStatus.CANCELLED,
        "worker_id": None,
        "updated_at": now,
    })


def retry(
    job: ProcessingJob,
    now: datetime,
    available_at: Optional[datetime] = None,
    weights: Optional[Mapping[str, float]] = None,
) -> ProcessingJob:
    """FAILED → PENDING with retry_count + 1, error cleared, failed stages reset."""
    if job.status != JobStatus.FAILED:
        raise InvalidStateError(job.id, job.status.value, "retry")
    if job.retry_count >= job.max_retries:
        raise TerminalError(job.id, job.retry_count, job.max_retries)

    stages = {
        name: (StageRecord(external_refs=rec.external_refs)
               if rec.status == StageStatus.FAILED else rec)
        for name, rec in job.stages.items()
    }
    return job.model_copy(update={
        "status": JobStatus.PENDING,
        "stages": stages,
        "overall_progress": compute_overall_progress(stages, weights),
        "retry_count": job.retry_count + 1,
        "error": None,
        "worker_id": None,
        "last_heartbeat": None,
        "available_at": available_at,
        "updated_at": now,
    })

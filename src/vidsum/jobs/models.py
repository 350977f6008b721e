"""Pydantic models for processing jobs.

This module defines the type-safe records used throughout the orchestrator.
Jobs are immutable snapshots: every transition in ``state.py`` returns a
new ``ProcessingJob`` built with ``model_copy``; only the store persists.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_TTL = timedelta(days=7)


def utcnow() -> datetime:
    """Timezone-aware current time used for every job timestamp."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        pending → processing   (worker claims)
        processing → completed (all weighted stages completed)
        processing → failed    (a stage failed)
        failed → pending       (explicit retry, while retries remain)
        pending|processing → cancelled (client cancel)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Per-stage states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageName(str, Enum):
    """The fixed pipeline stages, in execution order."""

    UPLOAD = "upload"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"
    CLEANUP = "cleanup"

    @classmethod
    def parse(cls, value: Any) -> "StageName":
        """Coerce a raw stage name, raising ValueError for anything unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown stage {value!r}; expected one of {', '.join(s.value for s in cls)}"
            ) from None


# Stages that count towards overall progress, in execution order.
PIPELINE_STAGES = (StageName.UPLOAD, StageName.TRANSCRIPTION, StageName.SUMMARIZATION)
ALL_STAGES = PIPELINE_STAGES + (StageName.CLEANUP,)


class QueueName(str, Enum):
    """Dispatcher queues."""

    VIDEO_PROCESSING = "video-processing"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"
    CLEANUP = "cleanup"


class JobType(str, Enum):
    """What a job was created to do."""

    COMPLETE_PROCESSING = "complete_processing"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"
    CLEANUP = "cleanup"


class StageRecord(BaseModel):
    """Status and progress of a single pipeline stage."""

    model_config = ConfigDict(frozen=True)

    status: StageStatus = Field(default=StageStatus.PENDING)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    progress: int = Field(default=0, ge=0, le=100)
    external_refs: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque adapter metadata (transcription id, URLs, ...)"
    )
    error: Optional[str] = Field(
        default=None, description="Why a best-effort stage (cleanup) failed"
    )


class JobError(BaseModel):
    """Failure details, present only while the job is failed."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: str = Field(default="PROCESSING_ERROR")
    timestamp: datetime = Field(default_factory=utcnow)


class ProcessingOptions(BaseModel):
    """Summarization options carried by the job and handed to the adapter."""

    model_config = ConfigDict(frozen=True)

    summary_type: str = Field(default="detailed", pattern="^(brief|detailed|bullet_points)$")
    summary_length: str = Field(default="medium", pattern="^(short|medium|long)$")
    include_timestamps: bool = Field(default=True)
    language: str = Field(default="en", min_length=2)


def default_stages() -> Dict[str, StageRecord]:
    return {stage.value: StageRecord() for stage in ALL_STAGES}


class ProcessingJob(BaseModel):
    """Immutable snapshot of a processing job.

    ``overall_progress`` is derived from ``stages`` by the progress
    aggregator; callers never set it directly.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique job identifier (UUID)")
    video_id: str = Field(..., min_length=1, description="External Video entity id")
    job_type: JobType = Field(default=JobType.COMPLETE_PROCESSING)
    status: JobStatus = Field(default=JobStatus.PENDING)
    stages: Dict[str, StageRecord] = Field(default_factory=default_stages)
    overall_progress: int = Field(default=0, ge=0, le=100)
    error: Optional[JobError] = Field(default=None)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    queue_name: QueueName = Field(default=QueueName.VIDEO_PROCESSING)
    priority: int = Field(default=0, ge=-10, le=10, description="Higher = claimed first")
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    worker_id: Optional[str] = Field(default=None, description="Worker holding the claim")
    last_heartbeat: Optional[datetime] = Field(default=None)
    available_at: Optional[datetime] = Field(
        default=None, description="Not claimable before this time (retry backoff)"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None, description="TTL; sole GC criterion")

    @field_validator("stages")
    @classmethod
    def fixed_stage_set(cls, v: Dict[str, StageRecord]) -> Dict[str, StageRecord]:
        """Stages must be exactly the fixed pipeline stage set."""
        expected = {stage.value for stage in ALL_STAGES}
        keys = {StageName.parse(k).value for k in v}
        if keys != expected or len(v) != len(expected):
            raise ValueError(f"stages must be exactly {', '.join(sorted(expected))}")
        return {StageName.parse(k).value: rec for k, rec in v.items()}

    @model_validator(mode="after")
    def check_invariants(self) -> "ProcessingJob":
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        if self.error is not None and self.status != JobStatus.FAILED:
            raise ValueError("error may only be set on a failed job")
        if self.expires_at is None:
            object.__setattr__(self, "expires_at", self.created_at + DEFAULT_TTL)
        return self

    def stage(self, name: Any) -> StageRecord:
        """Look up a stage record by (validated) name."""
        return self.stages[StageName.parse(name).value]


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")

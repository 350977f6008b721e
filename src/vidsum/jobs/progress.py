"""Overall progress aggregation.

Pure functions: the overall percentage is always recomputed from the
stage records and never stored independently of a stage update.
"""

import math
from typing import Mapping, Optional

from .models import JobStatus, JobType, PIPELINE_STAGES, ProcessingJob, StageRecord

DEFAULT_WEIGHTS = {"upload": 0.10, "transcription": 0.60, "summarization": 0.30}

# Average seconds a job of each type takes end to end.
AVG_PROCESSING_TIMES_S = {
    JobType.TRANSCRIPTION: 180,
    JobType.SUMMARIZATION: 60,
    JobType.COMPLETE_PROCESSING: 300,
}
DEFAULT_PROCESSING_TIME_S = 300


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_overall_progress(
    stages: Mapping[str, StageRecord], weights: Optional[Mapping[str, float]] = None
) -> int:
    """Weighted sum of the pipeline stages' progress, rounded half-up.

    Only upload, transcription and summarization are weighted; the cleanup
    stage runs after completion and never contributes.

    Args:
        stages: Stage records keyed by stage name
        weights: Per-stage weights (defaults to 0.10 / 0.60 / 0.30)

    Returns:
        Integer percentage in 0..100
    """
    weights = weights or DEFAULT_WEIGHTS
    total = 0.0
    for stage in PIPELINE_STAGES:
        record = stages.get(stage.value)
        if record is not None:
            total += weights[stage.value] * record.progress
    return max(0, min(100, _round_half_up(total)))


def estimate_remaining_seconds(job: ProcessingJob) -> Optional[float]:
    """Rough time-to-completion based on average durations per job type.

    Returns None once the job is completed.
    """
    if job.status == JobStatus.COMPLETED:
        return None
    remaining = AVG_PROCESSING_TIMES_S.get(job.job_type, DEFAULT_PROCESSING_TIME_S)
    return max(0.0, remaining * (1 - job.overall_progress / 100))

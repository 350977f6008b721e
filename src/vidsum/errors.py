"""
Orchestrator error types.

All errors inherit from OrchestratorError for easy catching.
Stage-level failures (StageExecutionError) are captured onto the job
record by the worker; everything else propagates to the caller.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for all orchestrator failures."""
    pass


class ValidationError(OrchestratorError):
    """Raised for malformed input (missing video id, unknown stage name, ...)."""
    pass


class NotFoundError(OrchestratorError):
    """Raised when a job or video cannot be found."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class ConcurrencyError(OrchestratorError):
    """Raised when a claim loses against another worker (job no longer pending)."""

    def __init__(
        self, job_id: str, current_state: Optional[str], message: Optional[str] = None
    ):
        self.job_id = job_id
        self.current_state = current_state
        super().__init__(
            message
            or f"Job {job_id} cannot be claimed: status is {current_state}, expected pending"
        )


class InvalidStateError(OrchestratorError):
    """Raised when attempting an illegal state transition."""

    def __init__(
        self, job_id: str, current_state: str, action: str, message: Optional[str] = None
    ):
        self.job_id = job_id
        self.current_state = current_state
        self.action = action
        super().__init__(message or f"Cannot {action} job {job_id} in state {current_state}")


class TerminalError(InvalidStateError):
    """Raised when retrying a job whose retries are exhausted."""

    def __init__(self, job_id: str, retry_count: int, max_retries: int):
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            job_id,
            "failed",
            "retry",
            f"Job {job_id} cannot be retried: {retry_count}/{max_retries} retries used",
        )


class StageExecutionError(OrchestratorError):
    """Raised by adapters/workers when a stage fails.

    Never propagated to callers of the coordinator: the worker records it
    on the job (message + code) and moves on.
    """

    def __init__(self, stage: str, message: str, code: str = "PROCESSING_ERROR"):
        self.stage = stage
        self.message = message
        self.code = code
        super().__init__(f"{stage} stage failed: {message}")

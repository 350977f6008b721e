"""Abstract base classes for the job store, queue dispatcher and publisher.

These interfaces keep the coordinator independent of storage and
transport. The local implementation is SQLite (``sqlite_backend.py``) and
an in-process publisher (``notifications.py``); the coordinator only ever
talks to these abstractions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .models import ProcessingJob, StateTransition


class JobStore(ABC):
    """Persistent home of processing jobs; the single source of truth.

    Implementations must provide:
    - Atomic read-modify-write per job (``update``)
    - Lookups that treat expired records as absent
    - An audit trail of status transitions
    """

    @abstractmethod
    def insert(self, job: "ProcessingJob") -> None:
        """Persist a new job.

        Args:
            job: Freshly created job snapshot

        Raises:
            ValidationError: If a job with the same id already exists
        """
        pass

    @abstractmethod
    def get(self, job_id: str, now: Optional[datetime] = None) -> Optional["ProcessingJob"]:
        """Load a job, or None if absent or past its ``expires_at``."""
        pass

    @abstractmethod
    def update(
        self,
        job_id: str,
        fn: Callable[["ProcessingJob"], "ProcessingJob"],
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple["ProcessingJob", "ProcessingJob"]:
        """Atomically apply a transition to the stored job.

        Args:
            job_id: Job identifier
            fn: Pure transition, called with the current snapshot
            worker_id: Recorded in the transition log when status changes
            now: Reference time for expiry (defaults to the current time)

        Returns:
            Tuple of (before, after) snapshots

        Implementation notes:
        - Read, transition and write MUST happen in one write transaction,
          so concurrent writers on the same job are serialized
        - Exceptions raised by ``fn`` roll the transaction back and propagate
        - Raises NotFoundError if the job is absent or past its ``expires_at``
        """
        pass

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove a job and its queue entries. Returns False if absent."""
        pass

    @abstractmethod
    def delete_for_video(self, video_id: str) -> int:
        """Remove every job of a video (the video itself was deleted)."""
        pass

    @abstractmethod
    def list_jobs(
        self,
        status: Optional[str] = None,
        video_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List["ProcessingJob"]:
        """Query live (unexpired) jobs, optionally filtered by status and/or video."""
        pass

    @abstractmethod
    def delete_expired(self, now: datetime) -> List[Tuple[str, str]]:
        """Remove every job whose ``expires_at`` has passed, regardless of status.

        Returns:
            List of (job_id, status) for the removed jobs
        """
        pass

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail of a job's status changes, oldest first."""
        pass


class QueueBackend(ABC):
    """Per-queue pending sets with atomic claim.

    Implementations must provide:
    - Idempotent enqueue per (job id, queue)
    - Priority (higher first) then FIFO (created_at) selection order
    - Claims that are atomic with respect to concurrent workers: exactly
      one claimant wins a pending job, the others get ConcurrencyError
    """

    @abstractmethod
    def enqueue(self, job: "ProcessingJob", queue_name: Optional[str] = None) -> bool:
        """Add job to a queue (defaults to ``job.queue_name``).

        Returns:
            True if newly enqueued, False if it was already there
        """
        pass

    @abstractmethod
    def remove(self, job_id: str, queue_name: Optional[str] = None) -> int:
        """Drop a job's queue entries (all queues when queue_name is None)."""
        pass

    @abstractmethod
    def claim(self, job_id: str, worker_id: str) -> "ProcessingJob":
        """Atomically transition a specific job pending → processing.

        Raises:
            NotFoundError: If the job is absent
            ConcurrencyError: If the job is not currently pending
        """
        pass

    @abstractmethod
    def claim_next(self, queue_name: str, worker_id: str) -> Optional["ProcessingJob"]:
        """Atomically claim the best pending job of a queue, or None if empty."""
        pass

    @abstractmethod
    def pop_cleanup(self, worker_id: str) -> Optional["ProcessingJob"]:
        """Atomically take the next completed job waiting for cleanup."""
        pass

    @abstractmethod
    def pending(self, queue_name: str) -> List[str]:
        """Job ids waiting on a queue, in selection order."""
        pass

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh liveness of a processing job (no-op otherwise)."""
        pass

    @abstractmethod
    def find_stale_processing(self, timeout_s: int, now: datetime) -> List["ProcessingJob"]:
        """Processing jobs whose heartbeat (or start) is older than timeout_s."""
        pass

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Counts per job status plus pending depth per queue."""
        pass


class Publisher(ABC):
    """Transport for status-change events.

    Delivery is best-effort and at-most-once; there is no replay.
    """

    @abstractmethod
    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        """Emit an event to every current subscriber of a topic."""
        pass

"""Expiry sweeper and stale-job watchdog.

Expired records are deleted regardless of status; ``expires_at`` is the
only garbage-collection criterion. The watchdog fails processing jobs whose
worker stopped sending heartbeats, so they become retryable instead of
staying claimed forever.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from ..errors import InvalidStateError
from .coordinator import JobCoordinator
from .models import PIPELINE_STAGES, JobError, JobStatus, ProcessingJob, StageName, StageStatus

logger = logging.getLogger(__name__)

STAGE_TIMEOUT = "STAGE_TIMEOUT"


def sweep(coordinator: JobCoordinator, now: Optional[datetime] = None) -> int:
    """Delete every expired job and its queue entries.

    Returns:
        Number of jobs removed
    """
    now = now or coordinator.clock()
    removed = coordinator.store.delete_expired(now)
    for job_id, status in removed:
        if status == JobStatus.PROCESSING.value:
            logger.warning("Expired job %s was still processing; removed anyway", job_id)
    if removed:
        logger.info("Swept %d expired job(s)", len(removed))
    return len(removed)


def _stalled_stage(job: ProcessingJob) -> StageName:
    for stage in PIPELINE_STAGES:
        if job.stage(stage).status == StageStatus.PROCESSING:
            return stage
    for stage in PIPELINE_STAGES:
        if job.stage(stage).status != StageStatus.COMPLETED:
            return stage
    return PIPELINE_STAGES[-1]


def fail_stale_processing(
    coordinator: JobCoordinator, timeout_s: int, now: Optional[datetime] = None
) -> List[ProcessingJob]:
    """Fail processing jobs whose heartbeat is older than timeout_s.

    The failure lands on the stage that was running (or the first stage not
    yet completed) with code STAGE_TIMEOUT; the job can then be retried.
    """
    now = now or coordinator.clock()
    failed = []
    for job in coordinator.queue.find_stale_processing(timeout_s, now):
        stage = _stalled_stage(job)
        error = JobError(
            message=f"No heartbeat from worker {job.worker_id} for {timeout_s}s",
            code=STAGE_TIMEOUT,
            timestamp=now,
        )
        try:
            failed.append(coordinator.fail_stage(job.id, stage, error))
        except InvalidStateError:
            # Finished or cancelled since we looked.
            continue
        logger.warning("Job %s timed out in %s stage", job.id, stage.value)
    return failed


class ExpirySweeper:
    """Runs sweep (and the watchdog, when configured) on a daemon thread.

    The thread opens its own coordinator through ``open_coordinator`` since
    store connections are per thread.
    """

    def __init__(self, open_coordinator, interval_s: float = 300, stale_timeout_s=None):
        self.open_coordinator = open_coordinator
        self.interval_s = interval_s
        self.stale_timeout_s = stale_timeout_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, coordinator: JobCoordinator) -> int:
        if self.stale_timeout_s:
            fail_stale_processing(coordinator, self.stale_timeout_s)
        return sweep(coordinator)

    def _loop(self) -> None:
        coordinator = self.open_coordinator()
        try:
            while not self._stop_event.wait(self.interval_s):
                try:
                    self.run_once(coordinator)
                except Exception:
                    logger.exception("Expiry sweep failed")
        finally:
            coordinator.store.close()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

"""Stage execution and the worker pool.

This module drives claimed jobs through the pipeline with:
- StageExecutor: upload → transcription → summarization, one adapter
  call per stage, external refs recorded on the stage record
- Cooperative cancellation checked at every stage boundary
- Best-effort cleanup of completed jobs from the cleanup queue
- ThreadPoolExecutor workers, each with its own SQLite connection
- Heartbeat threads for long-running jobs
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from ..adapters import (
    StorageAdapter,
    SummarizationAdapter,
    SummaryResult,
    TranscriptionAdapter,
    TranscriptResult,
    UploadResult,
)
from ..errors import InvalidStateError, NotFoundError, StageExecutionError
from ..models import OrchestratorConfig
from .coordinator import JobCoordinator
from .models import (
    PIPELINE_STAGES,
    JobStatus,
    ProcessingJob,
    QueueName,
    StageName,
    StageStatus,
)
from .notifications import NotificationBus

logger = logging.getLogger(__name__)

# Queues a pool polls for pipeline work, in order.
WORK_QUEUES = (
    QueueName.VIDEO_PROCESSING.value,
    QueueName.TRANSCRIPTION.value,
    QueueName.SUMMARIZATION.value,
)

ResultCallback = Callable[[ProcessingJob, StageName, Any], None]


class JobCancelled(Exception):
    """Internal signal: the job was cancelled while a stage was in flight."""


class StageExecutor:
    """Runs the stages of one claimed job against the adapters.

    Adapter failures never escape: they are recorded on the job through
    ``fail_stage`` and the executor returns the failed snapshot. Stages that
    already completed (a retried job) are skipped; their external refs are
    reused to rebuild what later stages need.
    """

    def __init__(
        self,
        coordinator: JobCoordinator,
        storage: StorageAdapter,
        transcription: TranscriptionAdapter,
        summarization: SummarizationAdapter,
        on_result: Optional[ResultCallback] = None,
    ):
        self.coordinator = coordinator
        self.storage = storage
        self.transcription = transcription
        self.summarization = summarization
        self.on_result = on_result

    # ----- pipeline -------------------------------------------------------

    def run(self, job: ProcessingJob) -> ProcessingJob:
        """Execute every pending pipeline stage of a claimed job.

        Returns:
            Final snapshot: completed, failed, or cancelled
        """
        context: Dict[str, Any] = {}
        current = job

        for stage in PIPELINE_STAGES:
            current = self.coordinator.get_job(current.id)
            if current.status != JobStatus.PROCESSING:
                logger.info(
                    "Job %s is %s, not starting %s", current.id, current.status.value, stage.value
                )
                return current

            try:
                if current.stage(stage).status == StageStatus.COMPLETED:
                    self._restore(current, stage, context)
                else:
                    current = self._run_stage(current, stage, context)
            except JobCancelled:
                logger.warning("Discarding %s result of cancelled job %s", stage.value, job.id)
                return self.coordinator.get_job(job.id)
            except StageExecutionError as e:
                logger.error("Job %s: %s", job.id, e)
                return self._fail(job.id, stage, e)
            except Exception as e:
                logger.exception("Job %s: %s adapter failed", job.id, stage.value)
                return self._fail(job.id, stage, e)

        return current

    def _run_stage(
        self, job: ProcessingJob, stage: StageName, context: Dict[str, Any]
    ) -> ProcessingJob:
        self._advance(job.id, stage, 0, StageStatus.PROCESSING)
        handler = getattr(self, f"_{stage.value}")
        refs = handler(job, context)

        # A cancel may have landed while the adapter call was running.
        latest = self.coordinator.get_job(job.id)
        if latest.status != JobStatus.PROCESSING:
            raise JobCancelled(job.id)

        self.coordinator.record_external_refs(job.id, stage, refs)
        try:
            return self.coordinator.complete_stage(job.id, stage)
        except InvalidStateError:
            raise JobCancelled(job.id) from None

    def _advance(self, job_id: str, stage: StageName, progress: int, status: StageStatus) -> None:
        try:
            self.coordinator.advance_stage(job_id, stage, progress, status)
        except InvalidStateError:
            raise JobCancelled(job_id) from None

    def _fail(self, job_id: str, stage: StageName, error: Exception) -> ProcessingJob:
        try:
            return self.coordinator.fail_stage(job_id, stage, error)
        except InvalidStateError:
            # Cancelled underneath us; the cancel wins.
            return self.coordinator.get_job(job_id)

    def _emit(self, job: ProcessingJob, stage: StageName, result: Any) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(job, stage, result)
        except Exception:
            logger.exception("on_result callback failed for job %s", job.id)

    # ----- stage handlers -------------------------------------------------

    def _source_path(self, job: ProcessingJob) -> str:
        video_store = self.coordinator.video_store
        if video_store is None:
            raise StageExecutionError(
                StageName.UPLOAD.value, "no video store configured", code="VIDEO_NOT_FOUND"
            )
        try:
            video = video_store.get_video(job.video_id)
        except NotFoundError as e:
            raise StageExecutionError(StageName.UPLOAD.value, str(e), code="VIDEO_NOT_FOUND") from e
        path = video.get("local_path")
        if not path:
            raise StageExecutionError(
                StageName.UPLOAD.value,
                f"video {job.video_id} has no local file",
                code="VIDEO_NOT_FOUND",
            )
        return path

    def _upload(self, job: ProcessingJob, context: Dict[str, Any]) -> Dict[str, Any]:
        result = UploadResult.model_validate(self.storage.upload(self._source_path(job)))
        context["audio_url"] = result.url
        self._emit(job, StageName.UPLOAD, result)
        return {"public_id": result.public_id, "url": result.url}

    def _transcription(self, job: ProcessingJob, context: Dict[str, Any]) -> Dict[str, Any]:
        audio_url = context["audio_url"]
        transcription_id = self.transcription.submit(audio_url)
        self.coordinator.record_external_refs(
            job.id, StageName.TRANSCRIPTION, {"transcription_id": transcription_id}
        )
        self._advance(job.id, StageName.TRANSCRIPTION, 50, StageStatus.PROCESSING)

        result = TranscriptResult.model_validate(self.transcription.fetch_result(transcription_id))
        context["transcript"] = result
        self._emit(job, StageName.TRANSCRIPTION, result)
        return {
            "transcription_id": transcription_id,
            "audio_url": audio_url,
            "confidence": result.confidence,
        }

    def _summarization(self, job: ProcessingJob, context: Dict[str, Any]) -> Dict[str, Any]:
        transcript: TranscriptResult = context["transcript"]
        if not transcript.text.strip():
            raise StageExecutionError(
                StageName.SUMMARIZATION.value, "transcript is empty", code="EMPTY_TRANSCRIPT"
            )
        result = SummaryResult.model_validate(
            self.summarization.generate(transcript.text, job.options.model_dump())
        )
        self._emit(job, StageName.SUMMARIZATION, result)
        return {"tokens_used": result.tokens_used, "key_points": len(result.key_points)}

    def _restore(self, job: ProcessingJob, stage: StageName, context: Dict[str, Any]) -> None:
        """Rebuild the context a completed stage would have produced."""
        refs = job.stage(stage).external_refs
        if stage == StageName.UPLOAD:
            context["audio_url"] = refs.get("url")
        elif stage == StageName.TRANSCRIPTION:
            context["transcript"] = TranscriptResult.model_validate(
                self.transcription.fetch_result(refs["transcription_id"])
            )

    # ----- cleanup --------------------------------------------------------

    def cleanup(self, job: ProcessingJob) -> ProcessingJob:
        """Delete the uploaded media of a completed job. Best-effort.

        A failure is recorded on the cleanup stage only; the job stays
        completed.
        """
        public_id = job.stage(StageName.UPLOAD).external_refs.get("public_id")
        try:
            self.coordinator.advance_stage(job.id, StageName.CLEANUP, 0, StageStatus.PROCESSING)
            if public_id:
                self.storage.delete(public_id)
            self.coordinator.record_external_refs(
                job.id, StageName.CLEANUP, {"deleted": bool(public_id)}
            )
            return self.coordinator.complete_stage(job.id, StageName.CLEANUP)
        except (InvalidStateError, NotFoundError) as e:
            logger.warning("Skipping cleanup of job %s: %s", job.id, e)
            return job
        except Exception as e:
            logger.warning("Cleanup of job %s failed: %s", job.id, e)
            return self.coordinator.fail_stage(job.id, StageName.CLEANUP, e)


def _start_heartbeat(db_path: str, job_id: str, interval_s: float):
    """Start background thread to refresh the job heartbeat.

    Args:
        db_path: Path to SQLite database (thread opens its own connection)
        job_id: Job identifier
        interval_s: Seconds between heartbeats

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Heartbeat keeps the stale-job watchdog away from long-running jobs.
    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        from .sqlite_backend import SQLiteJobStore, SQLiteQueue

        store = SQLiteJobStore(db_path)
        queue = SQLiteQueue(store)
        try:
            while not stop_event.wait(interval_s):
                try:
                    queue.update_heartbeat(job_id)
                except sqlite3.Error as e:
                    logger.warning("Heartbeat failed for %s: %s", job_id, e)
        finally:
            store.close()

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal the heartbeat thread and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)


class JobWorkerPool:
    """ThreadPoolExecutor-based worker pool.

    Features:
    - One store connection per worker thread (SQLite connections are
      not shared across threads)
    - Workers poll the pipeline queues, then the cleanup queue
    - Context manager for graceful shutdown
    - Progress tracking with tqdm when draining

    Adapters must be thread-safe; they are shared by every worker.
    """

    def __init__(
        self,
        db_path: str,
        storage: StorageAdapter,
        transcription: TranscriptionAdapter,
        summarization: SummarizationAdapter,
        config: Optional[OrchestratorConfig] = None,
        bus: Optional[NotificationBus] = None,
        video_store: Any = None,
        on_result: Optional[ResultCallback] = None,
        queues: Iterable[str] = WORK_QUEUES,
        n_workers: Optional[int] = None,
    ):
        self.db_path = db_path
        self.storage = storage
        self.transcription = transcription
        self.summarization = summarization
        self.config = config or OrchestratorConfig()
        self.bus = bus or NotificationBus()
        self.video_store = video_store
        self.on_result = on_result
        self.queues = [QueueName(q).value for q in queues]
        self.n_workers = n_workers or self.config.workers.n_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._futures: List[Any] = []

    def __enter__(self):
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="vidsum-worker"
        )
        self._stop.clear()
        return self

    def __exit__(self, *args):
        self.shutdown()

    def _open_coordinator(self) -> JobCoordinator:
        from .sqlite_backend import SQLiteJobStore, SQLiteQueue

        store = SQLiteJobStore(self.db_path)
        return JobCoordinator(
            store, SQLiteQueue(store), self.bus, self.config, video_store=self.video_store
        )

    def _open_executor(self) -> StageExecutor:
        return StageExecutor(
            self._open_coordinator(),
            self.storage,
            self.transcription,
            self.summarization,
            on_result=self.on_result,
        )

    def run_once(self, executor: StageExecutor, worker_id: str) -> Optional[ProcessingJob]:
        """Claim and process one unit of work.

        Returns:
            Final job snapshot, or None if every queue was empty
        """
        coordinator = executor.coordinator
        for queue_name in self.queues:
            job = coordinator.claim_next(worker_id, queue_name)
            if job is None:
                continue
            heartbeat = _start_heartbeat(
                self.db_path, job.id, self.config.workers.heartbeat_interval_s
            )
            try:
                return executor.run(job)
            except NotFoundError:
                logger.warning("Job %s was deleted while %s was running it", job.id, worker_id)
                return job
            finally:
                _stop_heartbeat(heartbeat)

        job = coordinator.queue.pop_cleanup(worker_id)
        if job is not None:
            return executor.cleanup(job)
        return None

    def _work(self, worker_id: str, until_idle: bool, progress=None) -> List[ProcessingJob]:
        executor = self._open_executor()
        processed = []
        try:
            while not self._stop.is_set():
                job = self.run_once(executor, worker_id)
                if job is None:
                    if until_idle:
                        break
                    self._stop.wait(self.config.workers.poll_interval_s)
                    continue
                processed.append(job)
                if progress is not None:
                    progress.update(1)
        finally:
            executor.coordinator.store.close()
        return processed

    def drain(self, show_progress: bool = True) -> List[ProcessingJob]:
        """Process queued work until every queue is empty.

        Returns:
            Final snapshots of every processed job (pipeline and cleanup
            runs), in completion order
        """
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        results: List[ProcessingJob] = []
        with tqdm(desc="Processing jobs", unit="job", disable=not show_progress) as progress:
            futures = [
                self._executor.submit(self._work, f"worker-{i}", True, progress)
                for i in range(self.n_workers)
            ]
            for future in as_completed(futures):
                results.extend(future.result())
        return results

    def start(self) -> None:
        """Run workers in the background until stop() or shutdown()."""
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")
        self._stop.clear()
        self._futures = [
            self._executor.submit(self._work, f"worker-{i}", False)
            for i in range(self.n_workers)
        ]

    def stop(self) -> None:
        """Ask background workers to finish their current job and exit."""
        self._stop.set()
        for future in self._futures:
            exc = future.exception()
            if exc is not None:
                logger.error("Worker exited with error: %s", exc)
        self._futures = []

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for in-flight jobs to finish
        """
        self._stop.set()
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

"""Tests for the job coordinator.

Tests cover:
- Create, dispatch and claim with their notifications
- Stage progress, completion (cleanup queued) and failure
- Cancel and retry, including backoff
- Video status mirroring and best-effort side effects
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from vidsum.errors import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    StageExecutionError,
    TerminalError,
    ValidationError,
)
from vidsum.jobs.coordinator import JobCoordinator, to_job_error
from vidsum.jobs.models import JobError, JobStatus, QueueName, StageStatus, utcnow
from vidsum.jobs.notifications import NotificationBus
from vidsum.models import OrchestratorConfig

VP = QueueName.VIDEO_PROCESSING.value


def _names(received):
    return [event for _, event, _ in received]


class _Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta


def _complete_pipeline(coordinator, job_id):
    for stage in ("upload", "transcription", "summarization"):
        job = coordinator.complete_stage(job_id, stage)
    return job


class TestCreate:
    def test_create_scenario(self, coordinator):
        job = coordinator.create("V1")
        assert job.status == JobStatus.PENDING
        assert job.overall_progress == 0
        assert all(rec.status == StageStatus.PENDING for rec in job.stages.values())
        assert coordinator.get_job(job.id).id == job.id

    def test_create_job_dispatches(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create_job("V1", {"language": "de"}, priority=3)

        assert _names(received) == ["job-created", "job-dispatched"]
        assert coordinator.queue.pending(VP) == [job.id]
        assert job.priority == 3
        assert job.options.language == "de"

    def test_create_requires_video(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.create("")

    def test_defaults_come_from_config(self, store, queue):
        config = OrchestratorConfig.from_dict({"retry": {"max_retries": 5}, "jobs": {"ttl_days": 1}})
        job = JobCoordinator(store, queue, config=config).create("V1")
        assert job.max_retries == 5
        assert (job.expires_at - job.created_at).days == 1

    def test_dispatch_is_idempotent(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create("V1")

        assert coordinator.dispatch(job) is True
        assert coordinator.dispatch(job.id) is False
        assert _names(received).count("job-dispatched") == 1

    def test_dispatch_requires_pending(self, coordinator):
        job = coordinator.create("V1")
        coordinator.cancel(job)
        with pytest.raises(InvalidStateError):
            coordinator.dispatch(job)

    def test_get_job_missing(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.get_job("nope")


class TestClaim:
    def test_claim_mirrors_video_status(self, coordinator, video_store):
        job = coordinator.create_job("V1")
        claimed = coordinator.claim(job.id, "w1")

        assert claimed.status == JobStatus.PROCESSING
        video_store.set_video_status.assert_called_with("V1", "processing")

    def test_second_claim_loses(self, coordinator):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        with pytest.raises(ConcurrencyError):
            coordinator.claim(job.id, "w2")

    def test_claim_next(self, coordinator):
        job = coordinator.create_job("V1")
        assert coordinator.claim_next("w1").id == job.id
        assert coordinator.claim_next("w1") is None


class TestStages:
    def test_advance_publishes_progress(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")

        updated = coordinator.advance_stage(job.id, "transcription", 50, "processing")

        assert updated.overall_progress == 30
        _, event, payload = received[-1]
        assert event == "stage-progress"
        assert payload["stage"] == "transcription"
        assert payload["progress"] == 50
        assert payload["overall_progress"] == 30
        assert payload["job_id"] == job.id

    def test_advance_completed_scenario(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create("V1")

        updated = coordinator.advance_stage(job, "upload", 100, "completed")

        assert updated.overall_progress == 10
        assert "stage-completed" in _names(received)

    def test_advance_unknown_stage(self, coordinator):
        job = coordinator.create("V1")
        with pytest.raises(ValidationError):
            coordinator.advance_stage(job.id, "render", 10, "processing")

    def test_completion_queues_cleanup(self, coordinator, events, video_store):
        received = events.on("V1")
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")

        done = _complete_pipeline(coordinator, job.id)

        assert done.status == JobStatus.COMPLETED
        assert done.overall_progress == 100
        assert coordinator.queue.pending(QueueName.CLEANUP.value) == [job.id]
        assert _names(received).count("job-completed") == 1
        video_store.set_video_status.assert_called_with("V1", "completed")

    def test_fail_stage_scenario(self, coordinator, events, video_store):
        received = events.on("V1")
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")

        failed = coordinator.fail_stage(job.id, "transcription", {"message": "timeout"})

        assert failed.status == JobStatus.FAILED
        assert failed.error.message == "timeout"
        assert coordinator.can_retry(job.id)
        names = _names(received)
        assert names[-2:] == ["stage-failed", "job-failed"]
        assert received[-1][2]["can_retry"] is True
        video_store.set_video_status.assert_called_with("V1", "failed")

    def test_fail_stage_keeps_error_code(self, coordinator):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        failed = coordinator.fail_stage(
            job.id, "upload", StageExecutionError("upload", "gone", code="VIDEO_NOT_FOUND")
        )
        assert failed.error.code == "VIDEO_NOT_FOUND"
        assert failed.error.message == "gone"

    def test_cleanup_failure_is_best_effort(self, coordinator, events):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        _complete_pipeline(coordinator, job.id)
        received = events.on("V1")

        after = coordinator.fail_stage(job.id, "cleanup", RuntimeError("storage down"))

        assert after.status == JobStatus.COMPLETED
        assert after.stage("cleanup").status == StageStatus.FAILED
        assert _names(received) == ["stage-failed"]
        assert received[0][2]["error"] == "storage down"
        assert after.stage("cleanup").error == "storage down"
        assert "error" not in after.stage("cleanup").external_refs

    def test_completing_unclaimed_job_leaves_pending_set(self, coordinator):
        job = coordinator.create_job("V1")
        for stage in ("upload", "transcription", "summarization"):
            coordinator.advance_stage(job.id, stage, 100, "completed")

        assert coordinator.get_job(job.id).status == JobStatus.COMPLETED
        assert coordinator.queue.pending(VP) == []
        queues = coordinator.queue_stats()["queues"]
        assert queues[VP] == 0
        assert queues[QueueName.CLEANUP.value] == 1

    def test_failing_unclaimed_job_leaves_pending_set(self, coordinator):
        job = coordinator.create_job("V1")

        coordinator.fail_stage(job.id, "upload", "rejected")

        assert coordinator.queue.pending(VP) == []
        assert coordinator.claim_next("w1") is None

    def test_record_external_refs(self, coordinator):
        job = coordinator.create("V1")
        updated = coordinator.record_external_refs(job.id, "upload", {"public_id": "p1"})
        assert updated.stage("upload").external_refs == {"public_id": "p1"}


class TestCancel:
    def test_cancel_pending_scenario(self, coordinator, events, video_store):
        received = events.on("V1")
        job = coordinator.create_job("V1")

        cancelled = coordinator.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert coordinator.queue.pending(VP) == []
        assert _names(received)[-1] == "job-cancelled"
        video_store.set_video_status.assert_called_with("V1", "cancelled")
        with pytest.raises(InvalidStateError):
            coordinator.advance_stage(job.id, "upload", 10, "processing")

    def test_cancel_twice_is_noop(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create("V1")
        coordinator.cancel(job)
        coordinator.cancel(job)
        assert _names(received).count("job-cancelled") == 1

    def test_cancel_completed_raises(self, coordinator):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        _complete_pipeline(coordinator, job.id)
        with pytest.raises(InvalidStateError):
            coordinator.cancel(job.id)

    def test_cancel_missing(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.cancel("nope")


class TestRetry:
    def test_retry_requeues(self, coordinator, events):
        received = events.on("V1")
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        coordinator.fail_stage(job.id, "transcription", {"message": "timeout"})

        retried = coordinator.retry_job(job.id)

        assert retried.status == JobStatus.PENDING
        assert retried.retry_count == 1
        assert retried.error is None
        assert coordinator.queue.pending(VP) == [job.id]
        assert _names(received)[-2:] == ["job-retried", "job-dispatched"]
        assert coordinator.claim_next("w2").id == job.id

    def test_retry_exhausted(self, coordinator):
        job = coordinator.create_job("V1", max_retries=1)
        coordinator.claim(job.id, "w1")
        coordinator.fail_stage(job.id, "upload", "boom")
        coordinator.retry(job.id)
        coordinator.claim(job.id, "w1")
        coordinator.fail_stage(job.id, "upload", "boom")

        assert not coordinator.can_retry(job.id)
        with pytest.raises(TerminalError):
            coordinator.retry(job.id)

    def test_retry_non_failed(self, coordinator):
        job = coordinator.create("V1")
        with pytest.raises(InvalidStateError):
            coordinator.retry(job.id)

    def test_retry_with_backoff(self, store, queue):
        config = OrchestratorConfig.from_dict({"retry": {"backoff_base_s": 60}})
        coordinator = JobCoordinator(store, queue, config=config)
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        coordinator.fail_stage(job.id, "upload", "boom")

        retried = coordinator.retry(job.id)

        assert retried.available_at is not None
        assert (retried.available_at - retried.updated_at).total_seconds() == 60
        assert coordinator.claim_next("w2") is None
        with pytest.raises(ConcurrencyError, match="not yet available"):
            coordinator.claim(job.id, "w2")
        assert coordinator.get_job(job.id).status == JobStatus.PENDING


class TestExpiredJobs:
    @pytest.fixture
    def clock(self):
        return _Clock()

    @pytest.fixture
    def coordinator(self, store, queue, clock):
        return JobCoordinator(store, queue, clock=clock)

    def test_expired_job_cannot_be_changed(self, coordinator, clock):
        job = coordinator.create_job("V1")
        clock.advance(timedelta(days=8))

        with pytest.raises(NotFoundError):
            coordinator.get_job(job.id)
        with pytest.raises(NotFoundError):
            coordinator.advance_stage(job.id, "upload", 50, "processing")
        with pytest.raises(NotFoundError):
            coordinator.complete_stage(job.id, "upload")
        with pytest.raises(NotFoundError):
            coordinator.record_external_refs(job.id, "upload", {"public_id": "p1"})
        with pytest.raises(NotFoundError):
            coordinator.cancel(job.id)

        clock.advance(timedelta(days=-8))
        assert coordinator.get_job(job.id).status == JobStatus.PENDING
        assert coordinator.get_job(job.id).stage("upload").progress == 0

    def test_expired_failed_job_cannot_be_retried(self, coordinator, clock):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        coordinator.fail_stage(job.id, "upload", "boom")
        clock.advance(timedelta(days=8))

        with pytest.raises(NotFoundError):
            coordinator.retry(job.id)
        with pytest.raises(NotFoundError):
            coordinator.fail_stage(job.id, "upload", "again")

    def test_list_jobs_hides_expired(self, coordinator, clock):
        job = coordinator.create_job("V1")
        assert [j.id for j in coordinator.list_jobs()] == [job.id]

        clock.advance(timedelta(days=8))

        assert coordinator.list_jobs() == []
        assert coordinator.list_jobs(video_id="V1") == []


class TestHousekeeping:
    def test_delete_job(self, coordinator):
        job = coordinator.create_job("V1")
        assert coordinator.delete_job(job.id) is True
        with pytest.raises(NotFoundError):
            coordinator.get_job(job.id)

    def test_delete_jobs_for_video(self, coordinator):
        coordinator.create_job("V1")
        coordinator.create_job("V1")
        other = coordinator.create_job("V2")

        assert coordinator.delete_jobs_for_video("V1") == 2
        assert [j.id for j in coordinator.list_jobs()] == [other.id]

    def test_list_jobs_by_status(self, coordinator):
        a = coordinator.create_job("V1")
        coordinator.create_job("V2")
        coordinator.cancel(a.id)
        assert [j.id for j in coordinator.list_jobs(status="cancelled")] == [a.id]

    def test_queue_stats(self, coordinator):
        coordinator.create_job("V1")
        stats = coordinator.queue_stats()
        assert stats["pending"] == 1
        assert stats["queues"][VP] == 1

    def test_transitions(self, coordinator):
        job = coordinator.create_job("V1")
        coordinator.claim(job.id, "w1")
        assert [t.to_state for t in coordinator.transitions(job.id)] == ["pending", "processing"]


class TestBestEffortSideEffects:
    def test_video_store_failure_is_not_fatal(self, coordinator, video_store):
        video_store.set_video_status.side_effect = NotFoundError("Video", "V1")
        job = coordinator.create_job("V1")
        assert coordinator.claim(job.id, "w1").status == JobStatus.PROCESSING

    def test_publisher_failure_is_not_fatal(self, store, queue):
        publisher = MagicMock()
        publisher.publish.side_effect = ConnectionError("bus down")
        coordinator = JobCoordinator(store, queue, NotificationBus(publisher))

        job = coordinator.create_job("V1")

        assert coordinator.get_job(job.id).status == JobStatus.PENDING
        assert publisher.publish.call_count == 2

    def test_works_without_video_store(self, store, queue):
        coordinator = JobCoordinator(store, queue)
        job = coordinator.create_job("V1")
        assert coordinator.claim(job.id, "w1").status == JobStatus.PROCESSING


class TestToJobError:
    def test_from_job_error(self):
        error = JobError(message="x")
        assert to_job_error(error, utcnow()) is error

    def test_from_exception(self):
        error = to_job_error(TimeoutError("took too long"), utcnow())
        assert error.message == "took too long"
        assert error.code == "PROCESSING_ERROR"

    def test_from_mapping_with_code(self):
        error = to_job_error({"message": "quota", "code": "RATE_LIMITED"}, utcnow())
        assert (error.message, error.code) == ("quota", "RATE_LIMITED")

    def test_from_string(self):
        assert to_job_error("boom", utcnow()).message == "boom"

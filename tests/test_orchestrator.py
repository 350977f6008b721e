"""End-to-end wiring through open_orchestrator."""

from vidsum.jobs.models import JobStatus
from vidsum.models import OrchestratorConfig
from vidsum.orchestrator import open_orchestrator


def test_db_path_override(temp_db):
    with open_orchestrator(db_path=temp_db) as orch:
        assert orch.db_path == temp_db
        assert orch.config.store.db_path == temp_db


def test_full_pipeline(temp_db, publisher, video_store, adapters):
    seen = []
    publisher.subscribe("video-V1", lambda event, payload: seen.append(event))

    with open_orchestrator(db_path=temp_db, publisher=publisher, video_store=video_store) as orch:
        job = orch.coordinator.create_job("V1")
        with orch.worker_pool(*adapters, n_workers=1) as pool:
            pool.drain(show_progress=False)
        final = orch.coordinator.get_job(job.id)

    assert final.status == JobStatus.COMPLETED
    assert final.overall_progress == 100
    assert seen[0] == "job-created"
    assert "job-completed" in seen
    video_store.set_video_status.assert_any_call("V1", "completed")


def test_state_survives_reopen(temp_db):
    with open_orchestrator(db_path=temp_db) as orch:
        job = orch.coordinator.create_job("V1")

    with open_orchestrator(db_path=temp_db) as orch:
        assert orch.coordinator.get_job(job.id).status == JobStatus.PENDING
        assert orch.coordinator.queue_stats()["queues"]["video-processing"] == 1


def test_sweeper_stops_on_close(temp_db):
    config = OrchestratorConfig.from_dict({"sweeper": {"interval_s": 3600}})

    with open_orchestrator(config, db_path=temp_db, start_sweeper=True) as orch:
        sweeper = orch._sweeper
        assert sweeper is not None

    assert orch._sweeper is None
    assert sweeper._thread is None

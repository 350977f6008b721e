from pathlib import Path
from unittest.mock import MagicMock

import pytest

from vidsum.adapters import SummaryResult, TranscriptResult, UploadResult
from vidsum.jobs.coordinator import JobCoordinator
from vidsum.jobs.notifications import InMemoryPublisher, NotificationBus
from vidsum.jobs.sqlite_backend import SQLiteJobStore, SQLiteQueue
from vidsum.models import OrchestratorConfig


@pytest.fixture
def temp_db(tmp_path):
    """Path to a fresh SQLite database file."""
    return str(Path(tmp_path) / "test_jobs.db")


@pytest.fixture
def store(temp_db):
    store = SQLiteJobStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def queue(store):
    return SQLiteQueue(store)


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def events(publisher):
    """Record every event published on any video topic as (topic, event, payload)."""
    received = []

    class _Recorder:
        def on(self, video_id):
            publisher.subscribe(
                f"video-{video_id}",
                lambda event, payload: received.append((video_id, event, payload)),
            )
            return received

    return _Recorder()


@pytest.fixture
def video_store():
    videos = MagicMock()
    videos.get_video.return_value = {"id": "V1", "local_path": "/uploads/v1.mp4"}
    return videos


@pytest.fixture
def coordinator(store, queue, publisher, video_store):
    return JobCoordinator(
        store, queue, NotificationBus(publisher), OrchestratorConfig(), video_store=video_store
    )


@pytest.fixture
def adapters():
    """MagicMock storage / transcription / summarization adapters that succeed."""
    storage = MagicMock()
    storage.upload.return_value = UploadResult(public_id="media/v1", url="https://cdn/v1.mp4")

    transcription = MagicMock()
    transcription.submit.return_value = "tr-123"
    transcription.fetch_result.return_value = TranscriptResult(
        text="hello world, this is the transcript", confidence=0.93
    )

    summarization = MagicMock()
    summarization.generate.return_value = SummaryResult(
        summary="A greeting.", key_points=["hello", "world"], tokens_used=42
    )
    return storage, transcription, summarization

"""Tests for the notification bus and in-process publisher."""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

from vidsum.jobs.models import ProcessingJob
from vidsum.jobs.notifications import (
    JOB_CREATED,
    STAGE_PROGRESS,
    InMemoryPublisher,
    NotificationBus,
    video_topic,
)

NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestInMemoryPublisher:
    def test_delivers_in_emission_order(self):
        publisher = InMemoryPublisher()
        seen = []
        publisher.subscribe("video-V1", lambda event, payload: seen.append((event, payload["n"])))

        for n in range(3):
            publisher.publish("video-V1", STAGE_PROGRESS, {"n": n})

        assert seen == [(STAGE_PROGRESS, 0), (STAGE_PROGRESS, 1), (STAGE_PROGRESS, 2)]

    def test_topics_are_isolated(self):
        publisher = InMemoryPublisher()
        seen = []
        publisher.subscribe("video-V1", lambda event, payload: seen.append(event))

        publisher.publish("video-V2", JOB_CREATED, {})

        assert seen == []

    def test_unsubscribe(self):
        publisher = InMemoryPublisher()
        callback = MagicMock()
        unsubscribe = publisher.subscribe("video-V1", callback)

        unsubscribe()
        unsubscribe()
        publisher.publish("video-V1", JOB_CREATED, {})

        callback.assert_not_called()

    def test_late_subscriber_misses_earlier_events(self):
        publisher = InMemoryPublisher()
        publisher.publish("video-V1", JOB_CREATED, {})
        callback = MagicMock()
        publisher.subscribe("video-V1", callback)
        callback.assert_not_called()

    def test_failing_subscriber_does_not_block_others(self, caplog):
        publisher = InMemoryPublisher()
        second = MagicMock()
        publisher.subscribe("video-V1", MagicMock(side_effect=RuntimeError("socket closed")))
        publisher.subscribe("video-V1", second)

        with caplog.at_level(logging.ERROR, logger="vidsum.jobs.notifications"):
            publisher.publish("video-V1", JOB_CREATED, {"job_id": "j1"})

        second.assert_called_once_with(JOB_CREATED, {"job_id": "j1"})
        assert "Subscriber failed" in caplog.text


class TestNotificationBus:
    def test_job_event_payload(self):
        publisher = MagicMock()
        bus = NotificationBus(publisher)
        job = ProcessingJob(id="j1", video_id="V1", created_at=NOW, updated_at=NOW)

        bus.job_event(job, STAGE_PROGRESS, stage="upload", progress=50)

        publisher.publish.assert_called_once_with(
            "video-V1",
            STAGE_PROGRESS,
            {
                "job_id": "j1",
                "video_id": "V1",
                "status": "pending",
                "overall_progress": 0,
                "stage": "upload",
                "progress": 50,
            },
        )

    def test_transport_failure_is_swallowed(self, caplog):
        publisher = MagicMock()
        publisher.publish.side_effect = ConnectionError("broker down")
        bus = NotificationBus(publisher)

        with caplog.at_level(logging.ERROR, logger="vidsum.jobs.notifications"):
            bus.publish("video-V1", JOB_CREATED, {})

        assert "Failed to publish" in caplog.text

    def test_defaults_to_in_memory(self):
        assert isinstance(NotificationBus().publisher, InMemoryPublisher)


def test_video_topic():
    assert video_topic("abc") == "video-abc"

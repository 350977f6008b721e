"""Status-change notifications keyed by video.

Topics are ``video-{video_id}``. Delivery is fire-and-forget and
at-most-once: subscribers that join after an event never see it, and a
failing transport never fails the transition that produced the event.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .backends import Publisher
from .models import ProcessingJob

logger = logging.getLogger(__name__)

JOB_CREATED = "job-created"
JOB_DISPATCHED = "job-dispatched"
STAGE_PROGRESS = "stage-progress"
STAGE_COMPLETED = "stage-completed"
STAGE_FAILED = "stage-failed"
JOB_COMPLETED = "job-completed"
JOB_FAILED = "job-failed"
JOB_CANCELLED = "job-cancelled"
JOB_RETRIED = "job-retried"

Subscriber = Callable[[str, Dict[str, Any]], None]


def video_topic(video_id: str) -> str:
    return f"video-{video_id}"


class InMemoryPublisher(Publisher):
    """In-process transport: topic → list of subscriber callbacks.

    Subscribers are called synchronously on the publishing thread, in
    subscription order, so events of one topic arrive in emission order.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers.get(topic, []):
                    self._subscribers[topic].remove(callback)

        return unsubscribe

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(topic, []))
        for callback in callbacks:
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Subscriber failed on %s/%s", topic, event)


class NotificationBus:
    """Builds job event payloads and hands them to a Publisher."""

    def __init__(self, publisher: Optional[Publisher] = None):
        self.publisher = publisher or InMemoryPublisher()

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.publisher.publish(topic, event, payload)
        except Exception:
            logger.exception("Failed to publish %s on %s", event, topic)

    def job_event(self, job: ProcessingJob, event: str, **extra: Any) -> None:
        """Publish an event about a job on its video topic."""
        payload = {
            "job_id": job.id,
            "video_id": job.video_id,
            "status": job.status.value,
            "overall_progress": job.overall_progress,
            **extra,
        }
        self.publish(video_topic(job.video_id), event, payload)

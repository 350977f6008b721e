"""Process entry point: wires store, dispatcher, bus and coordinator.

Usage:
    with open_orchestrator(config) as orch:
        job = orch.coordinator.create_job("video-123")

        with orch.worker_pool(storage, transcription, summarization) as pool:
            pool.drain()

        print(orch.coordinator.queue_stats())

Initialization and teardown live here and nowhere else: components
receive their dependencies explicitly and never open databases by
themselves.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .jobs.coordinator import JobCoordinator
from .jobs.notifications import InMemoryPublisher, NotificationBus
from .jobs.sqlite_backend import SQLiteJobStore, SQLiteQueue
from .jobs.sweeper import ExpirySweeper
from .jobs.worker import JobWorkerPool
from .models import OrchestratorConfig

logger = logging.getLogger(__name__)


class Orchestrator:
    """Live set of orchestrator components sharing one configuration."""

    def __init__(
        self,
        config: OrchestratorConfig,
        publisher: Optional[Any] = None,
        video_store: Any = None,
    ):
        self.config = config
        self.db_path = config.store.db_path
        self.publisher = publisher or InMemoryPublisher()
        self.bus = NotificationBus(self.publisher)
        self.video_store = video_store
        self.coordinator = self.open_coordinator()
        self._sweeper: Optional[ExpirySweeper] = None

    def open_coordinator(self) -> JobCoordinator:
        """New coordinator on its own store connection (one per thread)."""
        store = SQLiteJobStore(self.db_path)
        return JobCoordinator(
            store, SQLiteQueue(store), self.bus, self.config, video_store=self.video_store
        )

    def worker_pool(
        self, storage, transcription, summarization, on_result=None, n_workers=None
    ) -> JobWorkerPool:
        return JobWorkerPool(
            self.db_path,
            storage,
            transcription,
            summarization,
            config=self.config,
            bus=self.bus,
            video_store=self.video_store,
            on_result=on_result,
            n_workers=n_workers,
        )

    def start_sweeper(self) -> ExpirySweeper:
        """Start the periodic expiry sweep (and stale-job watchdog)."""
        if self._sweeper is None:
            self._sweeper = ExpirySweeper(
                self.open_coordinator,
                interval_s=self.config.sweeper.interval_s,
                stale_timeout_s=self.config.sweeper.stale_timeout_s,
            )
        self._sweeper.start()
        return self._sweeper

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
        self.coordinator.store.close()


@contextmanager
def open_orchestrator(
    config: Optional[OrchestratorConfig] = None,
    db_path: Optional[str] = None,
    publisher: Optional[Any] = None,
    video_store: Any = None,
    start_sweeper: bool = False,
) -> Iterator[Orchestrator]:
    """Open the orchestrator for the duration of a with-block.

    Args:
        config: Resolved configuration (defaults apply when None)
        db_path: Overrides config.store.db_path
        publisher: Notification transport (in-process when None)
        video_store: Optional VideoStore for status mirroring and uploads
        start_sweeper: Run the expiry sweeper on a background thread
    """
    config = config or OrchestratorConfig()
    if db_path is not None:
        config = config.merge_cli_overrides({"db": db_path})

    orch = Orchestrator(config, publisher=publisher, video_store=video_store)
    logger.debug("Orchestrator opened on %s", orch.db_path)
    try:
        if start_sweeper:
            orch.start_sweeper()
        yield orch
    finally:
        orch.close()
        logger.debug("Orchestrator closed")

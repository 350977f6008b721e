"""Pydantic models for orchestrator configuration."""

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

WEIGHTED_STAGES = ("upload", "transcription", "summarization")
QUEUE_NAMES = ("video-processing", "transcription", "summarization", "cleanup")


class ProgressConfig(BaseModel):
    """Per-stage weights for overall progress aggregation."""

    weights: Dict[str, float] = Field(
        default_factory=lambda: {"upload": 0.10, "transcription": 0.60, "summarization": 0.30},
        description="Weight of each stage in overall progress (cleanup is never weighted)",
    )

    @field_validator("weights")
    @classmethod
    def weights_cover_pipeline(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Validate weights name exactly the weighted stages and sum to 1."""
        if set(v) != set(WEIGHTED_STAGES):
            raise ValueError(
                f"weights must name exactly {', '.join(WEIGHTED_STAGES)} (got {', '.join(sorted(v))})"
            )
        if any(w < 0 for w in v.values()):
            raise ValueError("weights must be non-negative")
        total = sum(v.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1.0 (got {total})")
        return v


class RetryConfig(BaseModel):
    """Retry limits and optional backoff."""

    max_retries: int = Field(default=3, ge=0, description="Default retry limit for new jobs")
    backoff_base_s: float = Field(
        default=0.0,
        ge=0.0,
        description="Base delay before a retried job is claimable again (0 = immediate requeue)",
    )
    backoff_max_s: float = Field(default=300.0, ge=0.0, description="Upper bound on backoff delay")


class JobDefaultsConfig(BaseModel):
    """Defaults applied to newly created jobs."""

    ttl_days: float = Field(default=7, gt=0, description="Record lifetime before the sweeper removes it")
    default_queue: str = Field(default="video-processing", description="Queue for new jobs")
    default_priority: int = Field(default=0, ge=-10, le=10, description="Higher = claimed sooner")

    @field_validator("default_queue")
    @classmethod
    def known_queue(cls, v: str) -> str:
        """Validate that the queue is one of the fixed queue names."""
        if v not in QUEUE_NAMES:
            raise ValueError(f"unknown queue {v!r}; expected one of {', '.join(QUEUE_NAMES)}")
        return v


class StoreConfig(BaseModel):
    """Persistence settings."""

    db_path: str = Field(default="jobs.db", description="SQLite database file for jobs and queues")


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    n_workers: int = Field(default=2, gt=0, description="Number of parallel workers")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Sleep when all queues are empty")
    heartbeat_interval_s: int = Field(
        default=30, gt=0, description="How often a worker refreshes the heartbeat of its job"
    )


class SweeperConfig(BaseModel):
    """Expiry sweeper and stale-job watchdog settings."""

    interval_s: int = Field(default=300, gt=0, description="Seconds between expiry sweeps")
    stale_timeout_s: Optional[int] = Field(
        default=7200,
        gt=0,
        description="Fail processing jobs without heartbeat for this long (None = disabled)",
    )


class OrchestratorConfig(BaseModel):
    """Complete orchestrator configuration with validation."""

    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    jobs: JobDefaultsConfig = Field(default_factory=JobDefaultsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestratorConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "OrchestratorConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["store"]["db_path"] = cli_args["db"]
        if cli_args.get("workers") is not None:
            config_dict["workers"]["n_workers"] = cli_args["workers"]
        if cli_args.get("max_retries") is not None:
            config_dict["retry"]["max_retries"] = cli_args["max_retries"]
        if cli_args.get("stale_timeout") is not None:
            config_dict["sweeper"]["stale_timeout_s"] = cli_args["stale_timeout"]

        return OrchestratorConfig.from_dict(config_dict)

"""Contracts of the external services the orchestrator drives.

The orchestrator calls these but never implements them: object storage,
transcription, summarization and the video store all live elsewhere.
Results are pydantic models so adapter output is validated at the seam.
"""

from typing import Any, Dict, List, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class UploadResult(BaseModel):
    """Where the storage adapter put the media."""

    public_id: str = Field(..., description="Storage-side identifier, used for delete")
    url: str = Field(..., description="Public URL handed to the transcription service")


class TranscriptResult(BaseModel):
    """Finished transcription."""

    text: str = Field(..., description="Full transcript text")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Engine confidence")


class SummaryResult(BaseModel):
    """Output of the summarization engine."""

    summary: str = Field(..., description="Generated summary")
    key_points: List[str] = Field(default_factory=list, description="Extracted key points")
    tokens_used: int = Field(default=0, ge=0, description="Tokens billed for the call")


@runtime_checkable
class VideoStore(Protocol):
    """Owner of Video entities. Raises NotFoundError for unknown ids."""

    def get_video(self, video_id: str) -> Dict[str, Any]: ...

    def set_video_status(self, video_id: str, status: str) -> None: ...


@runtime_checkable
class StorageAdapter(Protocol):
    """Object storage. May fail transiently."""

    def upload(self, local_path: str) -> UploadResult: ...

    def delete(self, public_id: str) -> None: ...


@runtime_checkable
class TranscriptionAdapter(Protocol):
    """Asynchronous transcription service."""

    def submit(self, audio_url: str) -> str: ...

    def fetch_result(self, external_job_id: str) -> TranscriptResult: ...


@runtime_checkable
class SummarizationAdapter(Protocol):
    """Summarization engine; synchronous from the orchestrator's point of view."""

    def generate(self, transcript_text: str, options: Dict[str, Any]) -> SummaryResult: ...

"""
Session-scoped pipeline execution history.

Tracks the results of pipelines run against one transcription. History is
kept in memory only and starts over with each new transcription.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .types import ExecutionResult, Pipeline, utc_now


class HistoryEntry(BaseModel):
    """One pipeline run recorded in the current session."""

    pipeline_id: str
    pipeline_name: str
    result_text: str
    execution_time: float = Field(default=0.0, ge=0.0, description="Seconds")
    timestamp: datetime = Field(default_factory=utc_now)


class ExecutionHistory:
    """Newest-first record of pipeline results for the active transcription."""

    def __init__(self):
        self.recording_id: Optional[str] = None
        self.original_transcription: Optional[str] = None
        self._results: List[HistoryEntry] = []

    def start_new_session(self, transcription: str) -> str:
        """Start a session for a new transcription, clearing previous results."""
        self.recording_id = str(uuid.uuid4())
        self.original_transcription = transcription
        self._results.clear()
        return self.recording_id

    def add_result(self, pipeline: Pipeline, result: ExecutionResult) -> HistoryEntry:
        entry = HistoryEntry(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            result_text=result.output_text,
            execution_time=result.total_duration,
        )
        self._results.insert(0, entry)
        return entry

    @property
    def results(self) -> List[HistoryEntry]:
        return list(self._results)

    @property
    def has_active_session(self) -> bool:
        return self.recording_id is not None

    def clear(self) -> None:
        self.recording_id = None
        self.original_transcription = None
        self._results.clear()

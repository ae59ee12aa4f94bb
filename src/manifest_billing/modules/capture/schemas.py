from __future__ import annotations

from enum import StrEnum

from pydantic import Field, computed_field

from manifest_billing.core.models import CamelModel, new_id
from manifest_billing.modules.recognition.schemas import AiMode, InlineImage


class SessionState(StrEnum):
    CAPTURING = "capturing"
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    IDLE = "idle"


class PendingChunk(CamelModel):
    id: str = Field(default_factory=new_id)
    images: list[InlineImage]


class ChunkSession(CamelModel):
    id: str = Field(default_factory=new_id)
    folder_id: str
    folder_name: str
    ai_mode: AiMode = AiMode.DEFAULT
    pending_chunks: list[PendingChunk] = Field(default_factory=list)
    current_chunk: list[InlineImage] = Field(default_factory=list)
    total_manifests_captured: int = 0
    processed_count: int = 0
    is_processing: bool = False
    is_paused: bool = False
    status_log: str = "Ready to capture."

    @computed_field
    @property
    def state(self) -> SessionState:
        if self.is_processing:
            return SessionState.PROCESSING
        if self.is_paused and self.pending_chunks:
            return SessionState.PAUSED
        if self.pending_chunks:
            return SessionState.QUEUED
        if self.processed_count and not self.current_chunk:
            return SessionState.IDLE
        return SessionState.CAPTURING


class StartSessionIn(CamelModel):
    ai_mode: AiMode = AiMode.DEFAULT


class CloseSessionIn(CamelModel):
    confirm: bool = False


class CloseSessionOut(CamelModel):
    erased: bool
    session: ChunkSession | None = None

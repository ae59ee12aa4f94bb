from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from manifest_billing.core.config import settings
from manifest_billing.core.errors import (
    ConfirmationRequired,
    NotFoundError,
    RecognitionFailure,
    SessionAlreadyActive,
    SessionBusy,
)
from manifest_billing.core.logging import (
    capture_session_context,
    get_logger,
    log_event,
    log_exception,
)
from manifest_billing.core.models import new_id, now_ms
from manifest_billing.core.storage import BlobStore, StorageError, StorageWriteFailure, get_storage
from manifest_billing.modules.capture.schemas import ChunkSession, PendingChunk
from manifest_billing.modules.imports.service import (
    MAX_IMAGES_PER_MANIFEST,
    manifest_from_recognition,
)
from manifest_billing.modules.manifests.service import ManifestRepository
from manifest_billing.modules.recognition.client import Recognizer
from manifest_billing.modules.recognition.schemas import AiMode, InlineImage
from manifest_billing.modules.recognition.service import recognize_with_strategy

logger = get_logger(__name__)

SESSION_KEY = "smart_billing_chunk_session"
CHUNK_INSTRUCTION = "Extract billing data."


class ActiveSessionSlot:
    """
    Owner of the single active capture session.

    Every `set` writes a full snapshot; absence of the snapshot key means there
    is nothing to resume.
    """

    def __init__(self, storage: BlobStore):
        self._storage = storage
        self._session: ChunkSession | None = None
        self.unsynced = False

    def get(self) -> ChunkSession | None:
        return self._session

    def set(self, session: ChunkSession) -> ChunkSession:
        if self._session is not None and self._session.id != session.id:
            raise SessionAlreadyActive(f"Capture session {self._session.id} is still active")
        self._session = session
        self._persist()
        return session

    def clear(self) -> None:
        self._session = None
        try:
            self._storage.remove(key=SESSION_KEY)
        except StorageWriteFailure:
            self.unsynced = True
            log_event(logger, "capture.persist.failure", level=logging.WARNING, action="remove")
            return
        self.unsynced = False

    def load(self) -> ChunkSession | None:
        try:
            body = self._storage.get(key=SESSION_KEY)
        except StorageError:
            log_exception(logger, "capture.load.failure", storage_key=SESSION_KEY)
            raise
        if body is None:
            self._session = None
            return None
        try:
            session = ChunkSession.model_validate_json(body)
        except PydanticValidationError:
            log_exception(logger, "capture.load.corrupt", storage_key=SESSION_KEY)
            self._session = None
            return None

        if session.is_processing:
            # The in-flight chunk never committed; it is still at the queue head.
            session = session.model_copy(
                update={
                    "is_processing": False,
                    "is_paused": True,
                    "status_log": "Processing was interrupted. Resume when ready.",
                }
            )
        self._session = session
        self._persist()
        log_event(
            logger,
            "capture.load.success",
            capture_session_id=session.id,
            pending=len(session.pending_chunks),
        )
        return session

    def _persist(self) -> None:
        if self._session is None:
            return
        body = self._session.model_dump_json(by_alias=True).encode("utf-8")
        try:
            self._storage.set(key=SESSION_KEY, body=body)
        except StorageWriteFailure:
            self.unsynced = True
            log_event(logger, "capture.persist.failure", level=logging.WARNING, action="set")
            return
        self.unsynced = False


def _consume_task_error(task: asyncio.Task) -> None:
    # process_queue has already logged the failure and paused the session.
    if not task.cancelled():
        task.exception()


def session_folder_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"Session_{now.strftime('%d-%m-%Y')}_{now.strftime('%H-%M-%S')}"


class CaptureService:
    def __init__(
        self,
        slot: ActiveSessionSlot,
        repository: ManifestRepository,
        recognizer: Recognizer,
        *,
        chunk_yield_seconds: float | None = None,
    ):
        self.slot = slot
        self.repository = repository
        self.recognizer = recognizer
        self.chunk_yield_seconds = (
            settings.chunk_yield_seconds if chunk_yield_seconds is None else chunk_yield_seconds
        )
        self._task: asyncio.Task | None = None

    def _require(self) -> ChunkSession:
        session = self.slot.get()
        if session is None:
            raise NotFoundError("No active capture session")
        return session

    def _update(self, **changes: Any) -> ChunkSession:
        return self.slot.set(self._require().model_copy(update=changes))

    def resume_session(self) -> ChunkSession | None:
        return self.slot.get()

    def start_session(self, ai_mode: AiMode = AiMode.DEFAULT) -> ChunkSession:
        current = self.slot.get()
        if current is not None:
            raise SessionAlreadyActive(f"Capture session {current.id} is still active")
        folder = self.repository.create_folder(session_folder_name())
        session = self.slot.set(
            ChunkSession(folder_id=folder.id, folder_name=folder.name, ai_mode=ai_mode)
        )
        log_event(
            logger,
            "capture.session.started",
            capture_session_id=session.id,
            folder_id=folder.id,
            ai_mode=ai_mode.value,
        )
        return session

    def capture_page(self, body: bytes, mime_type: str | None = None) -> ChunkSession:
        session = self._require()
        image = InlineImage(
            data=base64.b64encode(body).decode("ascii"),
            mime_type=mime_type or "image/jpeg",
        )
        chunk = [*session.current_chunk, image]
        if len(chunk) >= MAX_IMAGES_PER_MANIFEST:
            return self.close_current_chunk(chunk)
        return self._update(current_chunk=chunk, status_log=f"Page {len(chunk)} captured.")

    def close_current_chunk(self, images: list[InlineImage] | None = None) -> ChunkSession:
        session = self._require()
        chunk = images if images is not None else session.current_chunk
        if not chunk:
            return session
        pending = [*session.pending_chunks, PendingChunk(id=new_id(), images=chunk)]
        updated = self._update(
            pending_chunks=pending,
            current_chunk=[],
            total_manifests_captured=session.total_manifests_captured + 1,
            status_log="Manifest captured. Ready for next.",
        )
        log_event(
            logger,
            "capture.chunk.queued",
            capture_session_id=session.id,
            pages=len(chunk),
            pending=len(pending),
        )
        return updated

    def request_pause(self) -> ChunkSession:
        session = self._require()
        if session.is_processing:
            return self._update(is_paused=True, status_log="Pausing after the current manifest...")
        return self._update(is_paused=True)

    async def process_queue(self) -> ChunkSession:
        session = self._require()
        if session.is_processing or not session.pending_chunks:
            return session

        with capture_session_context(session.id):
            try:
                await self._drain()
            except Exception:
                log_exception(logger, "capture.queue.failure")
                if self.slot.get() is not None:
                    self._update(
                        is_processing=False,
                        is_paused=True,
                        status_log="Processing paused due to error. Resume when ready.",
                    )
                raise
        return self._require()

    async def _drain(self) -> None:
        self._update(is_processing=True, is_paused=False, status_log="Starting batch processing...")
        while True:
            # Re-read every pass: pause requests land in the slot while we await.
            session = self._require()
            if session.is_paused:
                self._update(is_processing=False, status_log="Processing paused. Resume when ready.")
                log_event(logger, "capture.queue.paused", pending=len(session.pending_chunks))
                return
            if not session.pending_chunks:
                self._update(is_processing=False, status_log="All captured manifests processed.")
                log_event(logger, "capture.queue.drained", processed=session.processed_count)
                return
            await self._process_head(session)
            session = self._require()
            if not session.is_processing:
                return
            if session.pending_chunks and not session.is_paused:
                await asyncio.sleep(self.chunk_yield_seconds)

    async def _process_head(self, session: ChunkSession) -> None:
        chunk = session.pending_chunks[0]
        sequence = session.processed_count + 1
        self._update(status_log=f"Processing manifest {sequence}... ({session.ai_mode.value} mode)")

        try:
            result = await recognize_with_strategy(
                self.recognizer,
                chunk.images,
                CHUNK_INSTRUCTION,
                session.ai_mode,
                on_status=lambda message: self._update(status_log=message),
            )
        except RecognitionFailure:
            log_event(
                logger,
                "capture.chunk.failure",
                level=logging.WARNING,
                chunk_id=chunk.id,
                pending=len(session.pending_chunks),
            )
            self._update(
                is_processing=False,
                is_paused=True,
                status_log="Processing paused due to error. Resume when ready.",
            )
            return

        manifest = manifest_from_recognition(
            result,
            self.repository.global_config,
            folder_id=session.folder_id,
            fallback_no=f"AUTO-{now_ms()}-{sequence}",
        )
        saved = self.repository.save_manifest(manifest)

        # Pop only after the manifest is committed.
        current = self._require()
        remaining = [c for c in current.pending_chunks if c.id != chunk.id]
        self._update(
            pending_chunks=remaining,
            processed_count=current.processed_count + 1,
            status_log=f"Manifest {saved.manifest_no} processed successfully.",
        )
        log_event(
            logger,
            "capture.chunk.processed",
            chunk_id=chunk.id,
            manifest_id=saved.id,
            manifest_no=saved.manifest_no,
            remaining=len(remaining),
        )

    def start_processing(self) -> ChunkSession:
        """Drain the queue in a background task on the running event loop."""
        session = self._require()
        if self._task is not None and not self._task.done():
            return session
        if session.is_processing or not session.pending_chunks:
            return session
        self._task = asyncio.get_running_loop().create_task(self.process_queue())
        self._task.add_done_callback(_consume_task_error)
        return session

    async def stop_processing(self) -> None:
        """Cancel an in-flight drain; the uncommitted head chunk stays queued."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self.slot.get() is not None:
            self._update(
                is_processing=False,
                is_paused=True,
                status_log="Processing was interrupted. Resume when ready.",
            )
        log_event(logger, "capture.queue.cancelled")

    def close_session(self, *, confirm: bool = False) -> ChunkSession | None:
        """
        Leave the capture view. Returns the session when it stays persisted for a
        later resume, or None when nothing was left and the record was erased.
        """
        session = self._require()
        if session.pending_chunks and not confirm:
            raise ConfirmationRequired(
                f"{len(session.pending_chunks)} captured manifest(s) are still queued"
            )
        if not session.pending_chunks and not session.is_processing and not session.current_chunk:
            self.slot.clear()
            log_event(logger, "capture.session.closed", capture_session_id=session.id, erased=True)
            return None
        log_event(logger, "capture.session.closed", capture_session_id=session.id, erased=False)
        return session

    def terminate_session(self) -> None:
        session = self._require()
        if session.is_processing:
            raise SessionBusy("Pause processing before terminating the session")
        self.slot.clear()
        log_event(
            logger,
            "capture.session.terminated",
            capture_session_id=session.id,
            pending=len(session.pending_chunks),
        )


_capture_service: CaptureService | None = None


def get_capture_service() -> CaptureService:
    global _capture_service  # noqa: PLW0603
    if _capture_service is None:
        from manifest_billing.modules.manifests.service import get_repository
        from manifest_billing.modules.recognition.service import get_recognizer

        repository = get_repository()
        slot = ActiveSessionSlot(get_storage())
        slot.load()
        _capture_service = CaptureService(slot, repository, get_recognizer())
    return _capture_service

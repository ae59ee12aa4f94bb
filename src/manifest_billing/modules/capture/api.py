from __future__ import annotations

from fastapi import APIRouter, Depends, File, Response, UploadFile, status

from manifest_billing.api.deps import get_capture
from manifest_billing.core.errors import NotFoundError
from manifest_billing.core.logging import get_logger, log_event
from manifest_billing.modules.capture.schemas import (
    ChunkSession,
    CloseSessionIn,
    CloseSessionOut,
    StartSessionIn,
)
from manifest_billing.modules.capture.service import CaptureService

router = APIRouter(tags=["capture"])
logger = get_logger(__name__)


@router.post("/capture/session", response_model=ChunkSession)
def start_session_endpoint(
    payload: StartSessionIn,
    capture: CaptureService = Depends(get_capture),
) -> ChunkSession:
    return capture.start_session(payload.ai_mode)


@router.get("/capture/session", response_model=ChunkSession)
def get_session_endpoint(capture: CaptureService = Depends(get_capture)) -> ChunkSession:
    session = capture.resume_session()
    if session is None:
        raise NotFoundError("No active capture session")
    return session


@router.post("/capture/session/pages", response_model=ChunkSession)
async def capture_page_endpoint(
    upload: UploadFile = File(...),
    capture: CaptureService = Depends(get_capture),
) -> ChunkSession:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        kind="capture_page",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    return capture.capture_page(body, upload.content_type)


@router.post("/capture/session/close-chunk", response_model=ChunkSession)
def close_chunk_endpoint(capture: CaptureService = Depends(get_capture)) -> ChunkSession:
    return capture.close_current_chunk()


@router.post("/capture/session/process", response_model=ChunkSession)
async def process_queue_endpoint(capture: CaptureService = Depends(get_capture)) -> ChunkSession:
    return capture.start_processing()


@router.post("/capture/session/pause", response_model=ChunkSession)
def pause_endpoint(capture: CaptureService = Depends(get_capture)) -> ChunkSession:
    return capture.request_pause()


@router.post("/capture/session/close", response_model=CloseSessionOut)
def close_session_endpoint(
    payload: CloseSessionIn,
    capture: CaptureService = Depends(get_capture),
) -> CloseSessionOut:
    session = capture.close_session(confirm=payload.confirm)
    return CloseSessionOut(erased=session is None, session=session)


@router.delete("/capture/session", status_code=status.HTTP_204_NO_CONTENT)
def terminate_session_endpoint(capture: CaptureService = Depends(get_capture)) -> Response:
    capture.terminate_session()
    return Response(status_code=status.HTTP_204_NO_CONTENT)

from __future__ import annotations

from manifest_billing.core.config import settings
from manifest_billing.core.logging import get_logger, log_event, log_exception
from manifest_billing.core.storage import StorageError
from manifest_billing.modules.capture.service import get_capture_service
from manifest_billing.modules.manifests.service import get_repository

logger = get_logger(__name__)


def bootstrap() -> None:
    try:
        repo = get_repository()
        capture = get_capture_service()
    except StorageError:
        # Nothing is cached; the next request retries the load.
        log_exception(
            logger,
            "app.bootstrap.storage_unavailable",
            storage_backend=settings.storage_backend,
        )
        return

    session = capture.resume_session()
    log_event(
        logger,
        "app.bootstrap.complete",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        manifests=len(repo.history),
        folders=len(repo.folders),
        capture_session_id=session.id if session else None,
        pending_chunks=len(session.pending_chunks) if session else None,
    )


async def shutdown() -> None:
    """Stop an in-flight capture drain so the persisted session reloads as paused."""
    try:
        capture = get_capture_service()
    except StorageError:
        log_exception(logger, "app.shutdown.storage_unavailable")
        return
    await capture.stop_processing()
    log_event(logger, "app.shutdown.complete")

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, UploadFile
from fastapi.responses import Response

from manifest_billing.api.deps import get_importer
from manifest_billing.core.archive import sanitize_filename
from manifest_billing.core.logging import get_logger, log_event
from manifest_billing.modules.imports.schemas import (
    BulkImportResult,
    ImageImportIn,
    ImportConflict,
    ImportOutcome,
    ResolveConflictIn,
    ResolveConflictOut,
)
from manifest_billing.modules.imports.service import ImportService

router = APIRouter(tags=["imports"])
logger = get_logger(__name__)


def _attachment(filename: str, body: bytes, media_type: str) -> Response:
    safe = sanitize_filename(filename).encode("ascii", "ignore").decode().replace('"', "")
    safe = safe or "download"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{safe}"'},
    )


@router.post("/imports/manifest", response_model=ImportOutcome)
def import_manifest_endpoint(
    payload: Any = Body(...),
    folder_id: str | None = None,
    importer: ImportService = Depends(get_importer),
):
    return importer.import_candidate(payload, target_folder_id=folder_id)


@router.get("/imports/conflict", response_model=ImportConflict | None)
def pending_conflict_endpoint(importer: ImportService = Depends(get_importer)):
    return importer.pending_conflict


@router.post("/imports/conflict/resolve", response_model=ResolveConflictOut)
def resolve_conflict_endpoint(
    payload: ResolveConflictIn,
    importer: ImportService = Depends(get_importer),
) -> ResolveConflictOut:
    manifest = importer.resolve_conflict(payload.action)
    return ResolveConflictOut(action=payload.action, manifest=manifest)


@router.post("/imports/bulk", response_model=BulkImportResult)
async def bulk_import_endpoint(
    uploads: list[UploadFile] = File(...),
    folder_id: str | None = Form(None),
    new_folder_name: str | None = Form(None),
    importer: ImportService = Depends(get_importer),
) -> BulkImportResult:
    files: list[tuple[str, bytes]] = []
    for upload in uploads:
        files.append((upload.filename or "upload.json", await upload.read()))
    log_event(logger, "upload.received", kind="bulk", file_count=len(files))
    return importer.bulk_import(files, folder_id=folder_id, new_folder_name=new_folder_name)


@router.post("/imports/archive", response_model=BulkImportResult)
async def archive_import_endpoint(
    upload: UploadFile = File(...),
    importer: ImportService = Depends(get_importer),
) -> BulkImportResult:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        kind="archive",
        filename=upload.filename,
        byte_size=len(body),
    )
    return importer.import_folder_archive(upload.filename or "archive.zip", body)


@router.post("/imports/images", response_model=ImportOutcome)
async def image_import_endpoint(
    payload: ImageImportIn,
    importer: ImportService = Depends(get_importer),
):
    return await importer.import_from_images(payload.images, payload.instruction, payload.mode)


@router.get("/folders/{folder_id}/export")
def export_folder_endpoint(
    folder_id: str,
    importer: ImportService = Depends(get_importer),
) -> Response:
    filename, body = importer.export_folder_archive(folder_id)
    return _attachment(filename, body, "application/zip")


@router.get("/manifests/{manifest_id}/export")
def export_manifest_endpoint(
    manifest_id: str,
    importer: ImportService = Depends(get_importer),
) -> Response:
    filename, body = importer.export_manifest(manifest_id)
    return _attachment(filename, body, "application/json")

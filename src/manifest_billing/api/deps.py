from __future__ import annotations

from manifest_billing.modules.capture.service import CaptureService, get_capture_service
from manifest_billing.modules.imports.service import ImportService, get_import_service
from manifest_billing.modules.manifests.service import ManifestRepository
from manifest_billing.modules.manifests.service import get_repository as _get_repository


def get_repository() -> ManifestRepository:
    return _get_repository()


def get_importer() -> ImportService:
    return get_import_service()


def get_capture() -> CaptureService:
    return get_capture_service()

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from manifest_billing.core.storage import diagnose_storage
from manifest_billing.modules.billing.api import router as billing_router
from manifest_billing.modules.capture.api import router as capture_router
from manifest_billing.modules.imports.api import router as imports_router
from manifest_billing.modules.manifests.api import router as manifests_router

router = APIRouter()

router.include_router(billing_router, prefix="/api")
router.include_router(manifests_router, prefix="/api")
router.include_router(imports_router, prefix="/api")
router.include_router(capture_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage(*, write_test: bool = False) -> JSONResponse:
    result = diagnose_storage(write_test=write_test)
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)

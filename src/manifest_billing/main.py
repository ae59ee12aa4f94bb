from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from manifest_billing.api.error_handlers import register_error_handlers
from manifest_billing.api.router import router as api_router
from manifest_billing.bootstrap import bootstrap, shutdown
from manifest_billing.core.logging import RequestContextMiddleware


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        try:
            yield
        finally:
            await shutdown()

    app = FastAPI(title="Manifest Billing", version="0.1.0", lifespan=lifespan)
    # Local single-user tool; the capture UI may be served from any origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()

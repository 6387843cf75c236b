"""Main entry point for the Herald application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from herald.api.federation import router as federation_router
from herald.api.v1 import identities_router, system_router
from herald.api.v1.dependencies import SessionDep
from herald.core.errors import KeyMaterialError
from herald.core.settings import settings
from herald.services.coordinator import DeliveryCoordinator
from herald.services.health import STATUS_UNHEALTHY, HealthMonitor
from herald.services.http import get_http_client

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Herald API",
    description="Signed activity federation and delivery engine",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Server-to-server routes live at the root; operator APIs are versioned
app.include_router(federation_router)
app.include_router(identities_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.exception_handler(KeyMaterialError)
async def key_material_error_handler(request: Request, exc: KeyMaterialError) -> JSONResponse:
    logger.error("Key material error on %s: %s", request.url.path, exc)
    return JSONResponse(
        {"detail": "Signing keys unavailable"},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.on_event("startup")
async def on_startup() -> None:
    if settings.worker_enabled:
        coordinator = DeliveryCoordinator(get_http_client())
        await coordinator.start()
        app.state.delivery_coordinator = coordinator
    else:
        app.state.delivery_coordinator = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    coordinator: DeliveryCoordinator | None = getattr(app.state, "delivery_coordinator", None)
    if coordinator:
        await coordinator.stop()
    await get_http_client().close()


@app.get("/health")
def health_check(db: SessionDep) -> JSONResponse:
    """Report overall health: 200 when healthy or degraded, 503 when unhealthy."""
    snapshot = HealthMonitor(db).snapshot()
    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if snapshot.status == STATUS_UNHEALTHY
        else status.HTTP_200_OK
    )
    return JSONResponse(
        {
            "status": snapshot.status,
            "pending": snapshot.pending_total,
            "error_rate": snapshot.error_rate,
            "warnings": snapshot.warnings,
        },
        status_code=code,
    )


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("herald.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

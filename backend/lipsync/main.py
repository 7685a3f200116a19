import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lipsync.api import export, files, queue, segments, sessions, websocket
from lipsync.api.deps import get_export_service, get_remote, get_scheduler, get_store
from lipsync.config import get_settings
from lipsync.constants.error_codes import get_error_spec
from lipsync.exceptions import LipsyncError
from lipsync.schemas.errors import ErrorInfo

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    Path(settings.temp_storage_path).mkdir(parents=True, exist_ok=True)
    if not get_remote().is_configured:
        logger.warning("Kling AI credentials are not configured; segment processing will fail")
    eviction = asyncio.create_task(
        get_store().run_eviction_loop(settings.session_sweep_interval_seconds)
    )
    yield
    # Shutdown
    eviction.cancel()
    with suppress(asyncio.CancelledError):
        await eviction
    await get_scheduler().shutdown()
    await get_export_service().shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LipsyncError)
async def lipsync_exception_handler(request: Request, exc: LipsyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(
            {"detail": exc.message, "error": exc.to_error_info().model_dump(exclude_none=True)}
        ),
    )


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": error.model_dump(exclude_none=True)},
    )


# Routers
app.include_router(sessions.router, prefix="/api")
app.include_router(segments.router, prefix="/api")
app.include_router(queue.router, prefix="/api")
app.include_router(export.router, prefix="/api")
app.include_router(files.router, prefix="/api")
app.include_router(websocket.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}

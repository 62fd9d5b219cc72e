import asyncio
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from facesearch.api.routers import face, search, upload, video
from facesearch.core.config import settings
from facesearch.core.errors import ERROR_STATUS, ErrorCode, FaceSearchError, error_body
from facesearch.core.logging import get_logger, setup_logging
from facesearch.services.embedding_engine import embedding_engine
from facesearch.services.search_service import search_service
from facesearch.services.session_store import session_store
from facesearch.utils.audit import SecurityEventType, Severity, audit_logger
from facesearch.utils.concurrency import run_blocking


logger = get_logger(__name__)


# --- Application Lifecycle (Lifespan) ---
@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Lifecycle manager for the FastAPI application.
    Loads the ONNX models and starts the session sweeper on startup,
    releases every session, the browser and the models on shutdown.
    """
    setup_logging()

    logger.info("Loading ONNX models into memory...")
    try:
        await run_blocking(embedding_engine.initialize, timeout=settings.MODEL_INIT_TIMEOUT)
    except (FaceSearchError, asyncio.TimeoutError) as e:
        # Without models there is nothing to serve
        logger.critical(f"Model initialization failed, aborting start-up: {e!r}")
        raise

    os.makedirs(settings.THUMBNAIL_DIR, exist_ok=True)
    session_store.start()
    logger.info("Application ready. Docs at /docs")

    yield

    logger.info("Shutting down...")
    await session_store.shutdown()
    await search_service.fetcher.close()
    embedding_engine.clear_models()


# --- FastAPI Instance ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Face-based video search: find videos whose thumbnails show a similar face",
    version=settings.VERSION,
    lifespan=lifespan
)

# --- CORS Configuration ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# --- Request timing ---
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={
            "endpoint": request.url.path,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        },
    )
    return response


# --- Error envelopes ---
@app.exception_handler(FaceSearchError)
async def face_search_error_handler(_request: Request, exc: FaceSearchError):
    logger.warning(f"Request failed: {exc.code.value} ({exc.detail})")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    audit_logger.log_security_event(
        SecurityEventType.INVALID_INPUT,
        Severity.LOW,
        details={"endpoint": request.url.path, "errors": len(exc.errors())},
        ip_address=request.client.host if request.client else None,
    )
    return JSONResponse(
        status_code=ERROR_STATUS[ErrorCode.VALIDATION_ERROR],
        content=error_body(ErrorCode.VALIDATION_ERROR),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(_request: Request, exc: Exception):
    logger.error(f"Unhandled error: {exc!r}", exc_info=exc)
    return JSONResponse(
        status_code=ERROR_STATUS[ErrorCode.INTERNAL_SERVER_ERROR],
        content=error_body(ErrorCode.INTERNAL_SERVER_ERROR),
    )


# --- RPC Routers ---
app.include_router(face.router, prefix="/api", tags=["Face"])
app.include_router(video.router, prefix="/api", tags=["Video"])
app.include_router(search.router, prefix="/api", tags=["Search"])
app.include_router(upload.router, prefix="/api", tags=["Upload"])


# --- Root Endpoint ---
@app.get("/", tags=["System"])
async def root():
    """Basic root endpoint for service discovery."""
    return {
        "message": f"Welcome to {settings.PROJECT_NAME} API",
        "status": "active",
        "docs": "/docs"
    }


# --- Liveness Endpoint ---
@app.get("/health", tags=["System"])
async def health():
    """Container liveness probe. Model state is reported by face.healthCheck."""
    return {
        "status": "alive",
        "environment": settings.ENVIRONMENT,
        "activeSessions": len(session_store),
    }

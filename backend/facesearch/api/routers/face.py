import asyncio
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, status

from facesearch.api.dependencies import (
    ClientContext,
    get_client_context,
    get_engine,
    get_session_store,
    rate_limit_face,
    rate_limit_global,
    require_operator,
)
from facesearch.core.config import settings
from facesearch.core.errors import ErrorCode, FaceSearchError
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import (
    EmptyRequest,
    ProcessImageRequest,
    SessionRequest,
    UpdateThresholdRequest,
)
from facesearch.services.embedding_engine import EmbeddingEngine
from facesearch.services.session_store import SessionStore
from facesearch.utils.concurrency import run_blocking
from facesearch.utils.image_processing import normalize_user_image
from facesearch.utils.validation import validate_image, validate_session_id

router = APIRouter(dependencies=[Depends(rate_limit_global)])

logger = get_logger(__name__)


async def process_image_bytes(
    data: bytes,
    ctx: ClientContext,
    engine: EmbeddingEngine,
    store: SessionStore,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> dict:
    """
    Shared by face.processImage and the multipart upload route: guard the
    bytes, embed the most prominent face, open a session and store the
    normalized JPEG on it. No session survives a failure.
    """
    # Declared type and filename only exist on the upload path
    validated = validate_image(data, mime_type=mime_type, filename=filename, ip_address=ctx.ip_address)

    try:
        result = await run_blocking(
            engine.embed_primary_face,
            validated.image,
            timeout=settings.FACE_DETECTION_TIMEOUT,
        )
    except asyncio.TimeoutError:
        raise FaceSearchError(ErrorCode.FACE_DETECTION_FAILED, "face detection timed out")

    if not result.ok:
        logger.info(f"No session created: {result.code.value}", extra={"client_ip": ctx.ip_address})
        raise FaceSearchError(result.code, result.detail)

    embedding = result.value
    session = store.create_session(embedding, ip_address=ctx.ip_address).unwrap()

    try:
        normalized = await run_blocking(normalize_user_image, validated.image)
        store.store_image(session.id, normalized, ip_address=ctx.ip_address).unwrap()
    except (FaceSearchError, ValueError) as e:
        store.delete_session(session.id)
        logger.error(f"Could not store session image: {e}", extra={"session_id": session.id})
        raise FaceSearchError(ErrorCode.PROCESSING_FAILED, "image storage failed")

    response = {
        "success": True,
        "faceDetected": True,
        "searchId": session.id,
    }
    if ctx.can_see_embeddings:
        response["embedding"] = embedding

    logger.info("Face processed", extra={"session_id": session.id, "client_ip": ctx.ip_address})
    return response


# POST /api/face.processImage

@router.post("/face.processImage", status_code=status.HTTP_200_OK, dependencies=[Depends(rate_limit_face)])
async def process_image(
    body: ProcessImageRequest,
    ctx: ClientContext = Depends(get_client_context),
    engine: EmbeddingEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """
    Detects the most prominent face in `imageData` and opens a search
    session for it. The raw embedding is only returned to local or
    operator callers.
    """
    return await process_image_bytes(body.to_bytes(), ctx, engine, store)


# POST /api/face.getSession

@router.post("/face.getSession")
async def get_session(
    body: SessionRequest,
    ctx: ClientContext = Depends(get_client_context),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Session snapshot with ISO-8601 timestamps."""
    validate_session_id(body.session_id)

    session = store.get_session(body.session_id, ip_address=ctx.ip_address).unwrap()

    # A session whose embedding no longer decrypts is useless for searching
    store.read_embedding(session).unwrap()

    return {"success": True, "session": session.snapshot()}


# POST /api/face.updateThreshold

@router.post("/face.updateThreshold")
async def update_threshold(
    body: UpdateThresholdRequest,
    ctx: ClientContext = Depends(get_client_context),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    validate_session_id(body.session_id)

    results = store.update_threshold(body.session_id, body.threshold, ip_address=ctx.ip_address).unwrap()

    return {"success": True, "updatedResults": [m.client_view() for m in results]}


# POST /api/face.deleteSession

@router.post("/face.deleteSession")
async def delete_session(
    body: SessionRequest,
    ctx: ClientContext = Depends(get_client_context),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Idempotent: unknown ids succeed too."""
    validate_session_id(body.session_id)

    store.delete_session(body.session_id, ip_address=ctx.ip_address).unwrap()

    return {"success": True}


# POST /api/face.healthCheck

@router.post("/face.healthCheck")
async def health_check(
    body: Optional[EmptyRequest] = None,
    engine: EmbeddingEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """
    healthy: models valid and loaded. degraded: models valid but not
    loaded. models_missing: the model directory failed its checks.
    """
    timestamp = datetime.now(timezone.utc).isoformat()

    try:
        problems = engine.check_model_files()
        initialized = engine.is_initialized

        if not problems and initialized:
            health = "healthy"
        elif not problems:
            health = "degraded"
        else:
            health = "models_missing"

        details = {
            "modelsValid": not problems,
            "initialized": initialized,
            "activeSessions": len(store.list_active()),
        }

    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        health = "error"
        details = {"message": "health check failed"}

    return {"success": True, "status": health, "details": details, "timestamp": timestamp}


# Operator routes

@router.post("/face.getSessionStats")
async def get_session_stats(
    body: Optional[EmptyRequest] = None,
    _operator: ClientContext = Depends(require_operator),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    return {"success": True, "stats": store.stats()}


@router.post("/face.cleanupSessions")
async def cleanup_sessions(
    body: Optional[EmptyRequest] = None,
    operator: ClientContext = Depends(require_operator),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    before = len(store)
    cleaned = store.sweep()

    logger.info(f"Manual cleanup by {operator.operator}: {cleaned} session(s)")
    return {"success": True, "cleaned": cleaned, "before": before, "after": len(store)}


@router.post("/face.getAccessLog")
async def get_access_log(
    body: SessionRequest,
    _operator: ClientContext = Depends(require_operator),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    validate_session_id(body.session_id)

    entries = store.get_access_log(body.session_id).unwrap()

    return {"success": True, "accessLog": [entry.to_dict() for entry in entries]}

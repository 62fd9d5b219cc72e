from fastapi import APIRouter, Depends, File, UploadFile

from facesearch.api.dependencies import (
    ClientContext,
    get_client_context,
    get_engine,
    get_session_store,
    rate_limit_face,
    rate_limit_global,
)
from facesearch.api.routers.face import process_image_bytes
from facesearch.core.config import settings
from facesearch.core.logging import get_logger
from facesearch.services.embedding_engine import EmbeddingEngine
from facesearch.services.session_store import SessionStore
from facesearch.utils.validation import check_size

router = APIRouter(dependencies=[Depends(rate_limit_global), Depends(rate_limit_face)])

logger = get_logger(__name__)


# POST /api/upload

@router.post("/upload")
async def upload_image(
    image: UploadFile = File(..., description="JPEG, PNG or WebP photo, at most 10 MiB"),
    ctx: ClientContext = Depends(get_client_context),
    engine: EmbeddingEngine = Depends(get_engine),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """
    Browser upload path. Runs the same checks as face.processImage plus a
    MIME type and extension cross-check against the file content.
    """
    try:
        # One byte past the limit is enough to know the file is too large
        data = await image.read(settings.MAX_UPLOAD_BYTES + 1)
    finally:
        await image.close()

    check_size(data, ip_address=ctx.ip_address)

    logger.info(
        f"Upload received: {len(data)} bytes ({image.content_type})",
        extra={"client_ip": ctx.ip_address},
    )

    return await process_image_bytes(
        data,
        ctx,
        engine,
        store,
        mime_type=image.content_type,
        filename=image.filename,
    )

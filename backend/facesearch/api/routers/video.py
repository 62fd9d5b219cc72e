from fastapi import APIRouter, Depends

from facesearch.api.dependencies import (
    ClientContext,
    get_client_context,
    get_search_service,
    rate_limit_global,
    rate_limit_search,
)
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import FetchFromSitesRequest
from facesearch.services.search_service import SearchService

router = APIRouter(dependencies=[Depends(rate_limit_global)])

logger = get_logger(__name__)


# POST /api/video.fetchFromSites

@router.post("/video.fetchFromSites", dependencies=[Depends(rate_limit_search)])
async def fetch_from_sites(
    body: FetchFromSitesRequest,
    ctx: ClientContext = Depends(get_client_context),
    service: SearchService = Depends(get_search_service),
) -> dict:
    """
    Scrapes every registered site, scores the thumbnails against
    `embedding` and returns the matches at or above `threshold`
    (default 0.7).

    With `searchId` the outcome is also stored on that session, and
    deleting the session while this runs cancels it.
    """
    payload = await service.fetch_from_sites(
        body.embedding,
        threshold=body.threshold,
        search_id=body.search_id,
        ip_address=ctx.ip_address,
    )

    return {"success": True, **payload}

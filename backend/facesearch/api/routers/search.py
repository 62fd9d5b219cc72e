from fastapi import APIRouter, Depends

from facesearch.api.dependencies import (
    ClientContext,
    get_client_context,
    get_session_store,
    rate_limit_global,
)
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import ConfigureSearchRequest, SearchRequest
from facesearch.services.session_store import SessionStatus, SessionStore
from facesearch.utils.validation import validate_session_id

router = APIRouter(dependencies=[Depends(rate_limit_global)])

logger = get_logger(__name__)

PROGRESS = {
    SessionStatus.ERROR: 0,
    SessionStatus.PROCESSING: 50,
    SessionStatus.COMPLETED: 100,
}


# POST /api/search.getResults

@router.post("/search.getResults")
async def get_results(
    body: SearchRequest,
    ctx: ClientContext = Depends(get_client_context),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    validate_session_id(body.search_id)

    session = store.get_session(body.search_id, ip_address=ctx.ip_address).unwrap()

    return {
        "success": True,
        "results": [m.client_view() for m in session.results],
        "status": session.status.value,
        "progress": PROGRESS[session.status],
    }


# POST /api/search.configure

@router.post("/search.configure")
async def configure(
    body: ConfigureSearchRequest,
    ctx: ClientContext = Depends(get_client_context),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """
    Re-filters the stored matches with a new threshold. Sites are not
    scraped again and no similarity is recomputed.
    """
    validate_session_id(body.search_id)

    results = store.update_threshold(body.search_id, body.threshold, ip_address=ctx.ip_address).unwrap()

    logger.info(
        f"Search reconfigured: threshold={body.threshold} -> {len(results)} result(s)",
        extra={"session_id": body.search_id},
    )
    return {"success": True, "updatedResults": [m.client_view() for m in results]}

import asyncio
from typing import Awaitable, List, Optional, Sequence, TypeVar

from pydantic.alias_generators import to_camel

from facesearch.core.errors import ErrorCode, FaceSearchError
from facesearch.core.logging import get_logger
from facesearch.services.embedding_engine import embedding_engine
from facesearch.services.face_math import match_statistics, validate_embedding_integrity
from facesearch.services.session_store import SessionStatus, SessionStore, session_store
from facesearch.services.site_fetcher import SiteFetcher
from facesearch.services.thumbnail_pipeline import PipelineCancelled, PipelineOptions, ThumbnailPipeline
from facesearch.utils.validation import validate_embedding, validate_session_id, validate_threshold

logger = get_logger(__name__)

T = TypeVar("T")


async def _until_cancelled(awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
    """
    Awaits `awaitable` unless `cancel_event` fires first, in which case the
    work is cancelled and PipelineCancelled is raised.
    """
    if cancel_event is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if cancel_event.is_set() and not work.done():
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise PipelineCancelled()

    return work.result()


class SearchService:
    """
    Runs one search: fetch candidates from every site, score their
    thumbnails and, when the search belongs to a session, store the
    outcome on it.
    """

    def __init__(self, store: SessionStore, fetcher: SiteFetcher, pipeline: ThumbnailPipeline):
        self.store = store
        self.fetcher = fetcher
        self.pipeline = pipeline

    def _start_session_search(self, search_id: str, ip_address: Optional[str]) -> asyncio.Event:
        validate_session_id(search_id)

        lookup = self.store.get_session(search_id, ip_address=ip_address)
        if not lookup.ok:
            raise FaceSearchError(lookup.code, lookup.detail)

        if lookup.value.status != SessionStatus.PROCESSING:
            raise FaceSearchError(
                ErrorCode.VALIDATION_ERROR,
                f"search already {lookup.value.status.value}"
            )

        claimed = self.store.register_search(search_id)
        if not claimed.ok:
            raise FaceSearchError(claimed.code, claimed.detail)
        return claimed.value

    def _store_outcome(self, search_id: str, threshold: float, scored: Sequence, success: bool) -> None:
        if not success:
            self.store.update_status(search_id, SessionStatus.ERROR)
            return

        # The pool holds every scored candidate; the threshold update derives the results from it
        stored = self.store.update_results(search_id, [], candidate_pool=scored)
        if stored.ok:
            stored = self.store.update_threshold(search_id, threshold)
        if not stored.ok:
            logger.error(f"Could not store search results: {stored.code}", extra={"session_id": search_id})
            self.store.update_status(search_id, SessionStatus.ERROR)
            raise FaceSearchError(stored.code, stored.detail)

        self.store.update_status(search_id, SessionStatus.COMPLETED)

    def _mark_failed(self, search_id: Optional[str], cancel_event: Optional[asyncio.Event]) -> None:
        if search_id and not (cancel_event and cancel_event.is_set()):
            self.store.update_status(search_id, SessionStatus.ERROR)

    async def fetch_from_sites(
        self,
        embedding: List[float],
        threshold: Optional[float] = None,
        search_id: Optional[str] = None,
        options: Optional[PipelineOptions] = None,
        ip_address: Optional[str] = None,
    ) -> dict:
        """
        Raises:
            FaceSearchError: VALIDATION_ERROR / INVALID_THRESHOLD for bad input,
                             SESSION_* for an unusable search id,
                             SESSION_NOT_FOUND when the session is deleted mid-run,
                             PROCESSING_FAILED when the pipeline fails as a whole.
        """
        values = validate_embedding(embedding)

        ok, reason = validate_embedding_integrity(values)
        if not ok:
            raise FaceSearchError(ErrorCode.VALIDATION_ERROR, f"invalid embedding: {reason}")

        threshold = validate_threshold(
            self.store.config.DEFAULT_THRESHOLD if threshold is None else threshold
        )

        cancel_event = self._start_session_search(search_id, ip_address) if search_id else None

        log_extra = {"session_id": search_id} if search_id else {}
        logger.info(f"Search started (threshold={threshold})", extra=log_extra)

        try:
            fetched = await _until_cancelled(self.fetcher.fetch_all_sites(), cancel_event)

            outcome = await self.pipeline.run(
                fetched.candidates,
                values,
                threshold,
                options=options,
                cancel_event=cancel_event,
            )

        except PipelineCancelled:
            logger.info("Search cancelled, no results written", extra=log_extra)
            raise FaceSearchError(ErrorCode.SESSION_NOT_FOUND, "session deleted during search")

        except FaceSearchError:
            self._mark_failed(search_id, cancel_event)
            raise

        except Exception as e:
            logger.error(f"Search failed: {e}", exc_info=True, extra=log_extra)
            self._mark_failed(search_id, cancel_event)
            raise FaceSearchError(ErrorCode.PROCESSING_FAILED, str(e)) from e

        finally:
            if search_id:
                self.store.finish_search(search_id)

        if cancel_event is not None and cancel_event.is_set():
            raise FaceSearchError(ErrorCode.SESSION_NOT_FOUND, "session deleted during search")

        if search_id:
            self._store_outcome(search_id, threshold, outcome.scored, outcome.success)

        if not outcome.success:
            logger.error(f"Thumbnail pipeline failed: {outcome.errors}", extra=log_extra)
            raise FaceSearchError(ErrorCode.PROCESSING_FAILED, "; ".join(outcome.errors))

        logger.info(
            f"Search finished: {len(outcome.matches)} match(es), "
            f"{len(fetched.errors) + len(outcome.errors)} error(s)",
            extra=log_extra,
        )

        return {
            "results": [m.client_view() for m in outcome.matches],
            "processedSites": fetched.processed_sites,
            "errors": fetched.errors + outcome.errors,
            "stats": outcome.stats.to_dict(),
            "matchStatistics": {to_camel(k): v for k, v in match_statistics(outcome.matches).items()},
        }


def build_search_service(store: SessionStore, engine) -> SearchService:
    return SearchService(store=store, fetcher=SiteFetcher(), pipeline=ThumbnailPipeline(engine))


# Process-wide service wired to the global store and engine
search_service = build_search_service(session_store, embedding_engine)

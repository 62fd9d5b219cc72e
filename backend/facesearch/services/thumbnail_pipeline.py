import asyncio
import os
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set

import httpx

from facesearch.core.config import settings
from facesearch.core.errors import FaceSearchError
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import FaceDetection, VideoCandidate, VideoMatch
from facesearch.services.face_math import CandidateFaces, rethreshold, score_candidates
from facesearch.utils.concurrency import chunked, gather_settled, run_blocking
from facesearch.utils.image_processing import normalize_thumbnail
from facesearch.utils.validation import validate_threshold

logger = get_logger(__name__)

SIMILARITY_CHUNK_SIZE = 10

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class PipelineCancelled(Exception):
    """The owning session was deleted or the process is shutting down."""


class ThumbnailError(Exception):
    """Per-item failure. The message is safe to show to clients."""


@dataclass
class PipelineOptions:
    batch_size: int = 5
    max_concurrency: int = 3
    skip_on_error: bool = True
    max_retries: int = 2
    retry_delay: float = 1.0
    batch_pause: float = 0.1


@dataclass
class PipelineStats:
    total_processed: int = 0
    faces_detected: int = 0
    no_faces_found: int = 0
    processing_errors: int = 0

    def to_dict(self) -> dict:
        return {
            "totalProcessed": self.total_processed,
            "facesDetected": self.faces_detected,
            "noFacesFound": self.no_faces_found,
            "processingErrors": self.processing_errors,
        }


@dataclass
class PipelineResult:
    matches: List[VideoMatch] = field(default_factory=list)
    scored: List[VideoMatch] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    stats: PipelineStats = field(default_factory=PipelineStats)
    success: bool = True


def thumbnail_path(thumbnail_dir: str, candidate_id: str) -> str:
    safe_id = _UNSAFE_FILENAME_CHARS.sub("_", candidate_id)
    return os.path.join(thumbnail_dir, f"{safe_id}-thumbnail.jpg")


@dataclass
class _Scratch:
    """Thumbnails of one run, kept in a directory no other run writes to."""
    directory: str
    paths: Set[str] = field(default_factory=set)

    @classmethod
    def create(cls, thumbnail_dir: str) -> "_Scratch":
        return cls(os.path.join(thumbnail_dir, f"run-{secrets.token_hex(8)}"))

    def path_for(self, candidate_id: str) -> str:
        path = thumbnail_path(self.directory, candidate_id)
        self.paths.add(path)
        return path


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


class ThumbnailPipeline:
    """
    Download -> face scan -> score -> filter -> rank over video candidates.

    Downloads are bounded by a semaphore, scans run in batches with a short
    pause in between. Each run writes into its own directory under
    `thumbnail_dir`, removed when the run ends whatever the outcome.
    """

    def __init__(
        self,
        engine,
        thumbnail_dir: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        download_timeout: Optional[float] = None,
        detection_timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.thumbnail_dir = thumbnail_dir or settings.THUMBNAIL_DIR
        self._client = client
        self.download_timeout = download_timeout or settings.THUMBNAIL_TIMEOUT
        self.detection_timeout = detection_timeout or settings.FACE_DETECTION_TIMEOUT
        self.max_bytes = max_bytes or settings.MAX_UPLOAD_BYTES
        self._sleep = sleep

    @staticmethod
    def _check_cancel(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled()

    async def _download(
        self,
        client: httpx.AsyncClient,
        candidate: VideoCandidate,
        semaphore: asyncio.Semaphore,
        scratch: _Scratch,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        async with semaphore:
            self._check_cancel(cancel_event)

            try:
                data = await asyncio.wait_for(
                    self._fetch_bytes(client, candidate.thumbnail_url),
                    timeout=self.download_timeout,
                )
            except ThumbnailError:
                raise
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.warning(f"Thumbnail download failed for {candidate.id}: {e!r}")
                raise ThumbnailError(f"Thumbnail download failed for {candidate.id}") from e

        self._check_cancel(cancel_event)

        try:
            normalized = await run_blocking(normalize_thumbnail, data)
        except ValueError as e:
            raise ThumbnailError(f"Thumbnail for {candidate.id} is not a valid image") from e

        path = scratch.path_for(candidate.id)
        await run_blocking(_write_file, path, normalized)

        return path

    async def _fetch_bytes(self, client: httpx.AsyncClient, url: str) -> bytes:
        chunks = []
        size = 0

        async with client.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_bytes:
                    raise ThumbnailError("Thumbnail exceeds the maximum allowed size")
                chunks.append(chunk)

        return b"".join(chunks)

    async def _scan(self, candidate: VideoCandidate, path: str) -> List[FaceDetection]:
        try:
            return await run_blocking(
                self.engine.detect_faces_in_file,
                path,
                timeout=self.detection_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ThumbnailError(f"Face detection timed out for {candidate.id}") from e
        except (FaceSearchError, OSError) as e:
            logger.warning(f"Face scan failed for {candidate.id}: {e}")
            raise ThumbnailError(f"Face detection failed for {candidate.id}") from e

    async def _process_one(
        self,
        client: httpx.AsyncClient,
        candidate: VideoCandidate,
        semaphore: asyncio.Semaphore,
        scratch: _Scratch,
        cancel_event: Optional[asyncio.Event],
    ) -> List[FaceDetection]:
        path = await self._download(client, candidate, semaphore, scratch, cancel_event)
        candidate.local_thumbnail_path = path

        self._check_cancel(cancel_event)
        return await self._scan(candidate, path)

    async def _run_batches(
        self,
        client: httpx.AsyncClient,
        pending: Sequence[VideoCandidate],
        options: PipelineOptions,
        semaphore: asyncio.Semaphore,
        scratch: _Scratch,
        cancel_event: Optional[asyncio.Event],
    ):
        """One pass over `pending`. Returns (successes, failures)."""
        successes = []
        failures = []

        for batch_index, batch in enumerate(chunked(list(pending), options.batch_size)):
            if batch_index:
                await self._sleep(options.batch_pause)
            self._check_cancel(cancel_event)

            outcomes = await gather_settled(
                self._process_one(client, candidate, semaphore, scratch, cancel_event)
                for candidate in batch
            )

            for candidate, outcome in zip(batch, outcomes):
                if isinstance(outcome, (PipelineCancelled, asyncio.CancelledError)):
                    raise outcome
                if isinstance(outcome, BaseException):
                    failures.append((candidate, outcome))
                else:
                    successes.append(CandidateFaces(candidate, outcome))

            if failures and not options.skip_on_error:
                break

        return successes, failures

    async def run(
        self,
        candidates: Sequence[VideoCandidate],
        user_embedding: Sequence[float],
        threshold: float,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """
        Scores the candidates' thumbnails against the user embedding.

        Per-item failures are collected in `errors`. With
        `skip_on_error=False` the first failure stops the run and marks it
        unsuccessful.

        Raises:
            FaceSearchError: INVALID_THRESHOLD.
            PipelineCancelled: When `cancel_event` is set during the run.
        """
        options = options or PipelineOptions()
        threshold = validate_threshold(threshold)
        result = PipelineResult()
        scratch = _Scratch.create(self.thumbnail_dir)

        pending = [c for c in candidates if c.thumbnail_url]
        scanned: List[CandidateFaces] = []

        try:
            self._check_cancel(cancel_event)
            os.makedirs(scratch.directory, exist_ok=True)

            semaphore = asyncio.Semaphore(options.max_concurrency)
            client = self._client or httpx.AsyncClient(timeout=self.download_timeout, follow_redirects=True)

            try:
                retries = 0
                while pending:
                    successes, failures = await self._run_batches(
                        client, pending, options, semaphore, scratch, cancel_event
                    )
                    scanned.extend(successes)

                    if not failures:
                        break

                    if not options.skip_on_error:
                        candidate, error = failures[0]
                        result.errors.append(self._public_error(candidate, error))
                        result.stats.processing_errors += 1
                        result.success = False
                        break

                    retries += 1
                    if retries > options.max_retries:
                        for candidate, error in failures:
                            result.errors.append(self._public_error(candidate, error))
                        result.stats.processing_errors += len(failures)
                        break

                    logger.info(f"Retrying {len(failures)} failed thumbnail(s), attempt {retries}")
                    await self._sleep(options.retry_delay * retries)
                    self._check_cancel(cancel_event)
                    pending = [candidate for candidate, _ in failures]

            finally:
                if self._client is None:
                    await client.aclose()

            for item in scanned:
                if item.faces:
                    result.stats.faces_detected += 1
                else:
                    result.stats.no_faces_found += 1
            result.stats.total_processed = len(scanned) + result.stats.processing_errors

            if result.success:
                for chunk in chunked(scanned, SIMILARITY_CHUNK_SIZE):
                    result.scored.extend(score_candidates(chunk, user_embedding))
                result.matches = rethreshold(result.scored, threshold).unwrap()

            return result

        finally:
            self._cleanup(scratch)

    @staticmethod
    def _public_error(candidate: VideoCandidate, error: BaseException) -> str:
        if isinstance(error, ThumbnailError):
            return str(error)
        logger.error(f"Unexpected thumbnail failure for {candidate.id}: {error!r}")
        return f"Processing failed for {candidate.id}"

    @staticmethod
    def _cleanup(scratch: _Scratch) -> None:
        for path in scratch.paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove thumbnail {os.path.basename(path)}: {e}")

        try:
            os.rmdir(scratch.directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove thumbnail directory {os.path.basename(scratch.directory)}: {e}")

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from facesearch.core.config import Settings, settings as default_settings
from facesearch.core.errors import ErrorCode, FaceSearchError, Result
from facesearch.core.logging import get_logger
from facesearch.core.rate_limit import prune_all_limiters
from facesearch.schemas.search_schema import VideoMatch
from facesearch.services.face_math import is_ranked, rethreshold
from facesearch.utils.encryption import (
    EmbeddingCipher,
    EmbeddingDecryptionError,
    generate_session_id,
    load_key,
)
from facesearch.utils.validation import validate_embedding, validate_threshold

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED  = "completed"
    ERROR      = "error"


class AccessOperation(str, Enum):
    CREATE = "create"
    READ   = "read"
    UPDATE = "update"
    DELETE = "delete"


class DataType(str, Enum):
    EMBEDDING = "embedding"
    IMAGE     = "image"
    RESULTS   = "results"


@dataclass(frozen=True)
class AccessLogEntry:
    timestamp: datetime
    operation: AccessOperation
    data_type: DataType
    success: bool
    ip_address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation.value,
            "dataType": self.data_type.value,
            "success": self.success,
            "ipAddress": self.ip_address,
        }


@dataclass
class SearchSession:
    id: str
    encrypted_embedding: bytes
    threshold: float
    created_at: datetime
    expires_at: datetime
    delete_after: datetime
    image_path: str
    status: SessionStatus = SessionStatus.PROCESSING
    results: List[VideoMatch] = field(default_factory=list)
    # Every scored candidate of the last run, so a lower threshold can bring matches back
    candidate_pool: Optional[List[VideoMatch]] = None
    access_log: List[AccessLogEntry] = field(default_factory=list)

    def snapshot(self) -> dict:
        """Client-facing view. Never includes the embedding, the pool or the access log."""
        return {
            "id": self.id,
            "status": self.status.value,
            "results": [m.client_view() for m in self.results],
            "threshold": self.threshold,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """
    In-memory search sessions with TTL eviction and an append-only access log.

    All public operations return a Result and never raise. The map is
    only mutated by these methods, and none of them awaits, so each call
    is atomic on the event loop.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        cipher: Optional[EmbeddingCipher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or default_settings
        self.cipher = cipher or EmbeddingCipher(load_key(self.config.ENCRYPTION_KEY))
        self.clock = clock
        self.ttl = timedelta(minutes=self.config.SESSION_TTL_MINUTES)
        self.delete_after = timedelta(hours=self.config.SESSION_DELETE_AFTER_HOURS)
        self._sessions: Dict[str, SearchSession] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # --- Internal helpers ---

    def _log_access(
        self,
        session: SearchSession,
        operation: AccessOperation,
        data_type: DataType,
        success: bool = True,
        ip_address: Optional[str] = None,
    ) -> None:
        session.access_log.append(AccessLogEntry(
            timestamp=self.clock(),
            operation=operation,
            data_type=data_type,
            success=success,
            ip_address=ip_address,
        ))
        logger.debug(
            f"Session access: {operation.value} {data_type.value} success={success}",
            extra={"session_id": session.id},
        )

    def _is_expired(self, session: SearchSession, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return now > session.expires_at or now > session.delete_after

    def _unlink_files(self, session: SearchSession) -> None:
        try:
            os.remove(session.image_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove session image: {e}", extra={"session_id": session.id})

    def _release(self, session_id: str) -> Optional[SearchSession]:
        session = self._sessions.pop(session_id, None)

        event = self._cancel_events.pop(session_id, None)
        if event is not None:
            event.set()

        if session is not None:
            self._unlink_files(session)

        return session

    def _lookup(self, session_id: str) -> Result[SearchSession]:
        session = self._sessions.get(session_id)

        if session is None:
            return Result.failure(ErrorCode.SESSION_NOT_FOUND)

        if self._is_expired(session):
            self._release(session_id)
            logger.info("Session expired on read", extra={"session_id": session_id})
            return Result.failure(ErrorCode.SESSION_EXPIRED)

        return Result.success(session)

    # --- Session CRUD ---

    def create_session(
        self,
        embedding: Sequence[float],
        threshold: Optional[float] = None,
        ip_address: Optional[str] = None,
    ) -> Result[SearchSession]:
        try:
            threshold = validate_threshold(
                self.config.DEFAULT_THRESHOLD if threshold is None else threshold
            )
            values = validate_embedding(embedding, expected_dim=self.config.EMBEDDING_DIM)
        except FaceSearchError as e:
            return Result.failure(e.code, e.detail)

        session_id = generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()

        now = self.clock()
        session = SearchSession(
            id=session_id,
            encrypted_embedding=self.cipher.encrypt(values),
            threshold=threshold,
            created_at=now,
            expires_at=now + self.ttl,
            delete_after=now + max(self.delete_after, self.ttl),
            image_path=os.path.join(self.config.TEMP_DIR, f"{session_id}_image.jpg"),
        )
        self._sessions[session_id] = session
        self._log_access(session, AccessOperation.CREATE, DataType.EMBEDDING, ip_address=ip_address)

        logger.info("Session created", extra={"session_id": session_id})
        return Result.success(session)

    def get_session(self, session_id: str, ip_address: Optional[str] = None) -> Result[SearchSession]:
        result = self._lookup(session_id)
        if result.ok:
            self._log_access(result.value, AccessOperation.READ, DataType.EMBEDDING, ip_address=ip_address)
        return result

    def get_embedding(self, session_id: str, ip_address: Optional[str] = None) -> Result[List[float]]:
        result = self.get_session(session_id, ip_address=ip_address)
        if not result.ok:
            return result
        return self.read_embedding(result.value)

    def read_embedding(self, session: SearchSession) -> Result[List[float]]:
        """Decrypts the embedding of a session the caller already looked up (and logged)."""
        try:
            return Result.success(self.cipher.decrypt(session.encrypted_embedding))
        except EmbeddingDecryptionError as e:
            logger.error(f"Session embedding unreadable: {e}", extra={"session_id": session.id})
            return Result.failure(ErrorCode.SESSION_CORRUPTED, str(e))

    def update_status(self, session_id: str, status: SessionStatus) -> Result[SearchSession]:
        if status not in (SessionStatus.COMPLETED, SessionStatus.ERROR):
            return Result.failure(ErrorCode.VALIDATION_ERROR, f"cannot move a session to {status}")

        result = self._lookup(session_id)
        if not result.ok:
            return result

        session = result.value
        if session.status != SessionStatus.PROCESSING:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"session already {session.status.value}"
            )

        session.status = status
        self._log_access(session, AccessOperation.UPDATE, DataType.RESULTS)
        logger.info(f"Session status -> {status.value}", extra={"session_id": session_id})
        return Result.success(session)

    def update_threshold(
        self,
        session_id: str,
        threshold: float,
        ip_address: Optional[str] = None,
    ) -> Result[List[VideoMatch]]:
        try:
            threshold = validate_threshold(threshold)
        except FaceSearchError as e:
            return Result.failure(e.code, e.detail)

        result = self._lookup(session_id)
        if not result.ok:
            return result

        session = result.value
        source = session.candidate_pool if session.candidate_pool is not None else session.results

        filtered = rethreshold(source, threshold)
        if not filtered.ok:
            return filtered

        session.threshold = threshold
        session.results = filtered.value
        self._log_access(session, AccessOperation.UPDATE, DataType.RESULTS, ip_address=ip_address)

        return Result.success(session.results)

    def update_results(
        self,
        session_id: str,
        results: Sequence[VideoMatch],
        candidate_pool: Optional[Sequence[VideoMatch]] = None,
    ) -> Result[SearchSession]:
        results = list(results)

        if not is_ranked(results):
            return Result.failure(ErrorCode.VALIDATION_ERROR, "results must be ranked")

        lookup = self._lookup(session_id)
        if not lookup.ok:
            return lookup

        session = lookup.value
        if any(m.similarity_score < session.threshold for m in results):
            return Result.failure(ErrorCode.VALIDATION_ERROR, "results below session threshold")

        session.results = results
        if candidate_pool is not None:
            session.candidate_pool = list(candidate_pool)
        self._log_access(session, AccessOperation.UPDATE, DataType.RESULTS)

        return Result.success(session)

    def store_image(self, session_id: str, data: bytes, ip_address: Optional[str] = None) -> Result[str]:
        """
        Writes the normalized user image to the session file, readable by
        the service user only.
        """
        lookup = self._lookup(session_id)
        if not lookup.ok:
            return lookup

        session = lookup.value
        try:
            os.makedirs(os.path.dirname(session.image_path), exist_ok=True)
            fd = os.open(session.image_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as e:
            self._log_access(session, AccessOperation.CREATE, DataType.IMAGE, success=False, ip_address=ip_address)
            logger.error(f"Could not store session image: {e}", extra={"session_id": session_id})
            return Result.failure(ErrorCode.PROCESSING_FAILED)

        self._log_access(session, AccessOperation.CREATE, DataType.IMAGE, ip_address=ip_address)
        return Result.success(session.image_path)

    def delete_session(self, session_id: str, ip_address: Optional[str] = None) -> Result[None]:
        """Idempotent. Unknown ids succeed as well."""
        session = self._sessions.get(session_id)

        if session is not None:
            self._log_access(session, AccessOperation.DELETE, DataType.EMBEDDING, ip_address=ip_address)
            self._log_access(session, AccessOperation.DELETE, DataType.IMAGE, ip_address=ip_address)
            self._release(session_id)
            logger.info("Session deleted", extra={"session_id": session_id})

        return Result.success(None)

    def list_active(self) -> List[SearchSession]:
        now = self.clock()
        return [s for s in self._sessions.values() if not self._is_expired(s, now)]

    def get_access_log(self, session_id: str) -> Result[List[AccessLogEntry]]:
        result = self._lookup(session_id)
        if not result.ok:
            return result
        return Result.success(list(result.value.access_log))

    def stats(self) -> dict:
        sessions = self.list_active()
        by_status = {status.value: 0 for status in SessionStatus}
        for session in sessions:
            by_status[session.status.value] += 1

        created = sorted(s.created_at for s in sessions)
        return {
            "totalSessions": len(sessions),
            "byStatus": by_status,
            "oldestSession": created[0].isoformat() if created else None,
            "newestSession": created[-1].isoformat() if created else None,
        }

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
        for session_id in expired:
            self._release(session_id)

        if expired:
            logger.info(f"Swept {len(expired)} expired session(s)")
        return len(expired)

    def sweep(self) -> int:
        """Periodic housekeeping: expired sessions and idle rate-limit buckets."""
        swept = self.cleanup_expired()
        pruned = prune_all_limiters()
        if pruned:
            logger.debug(f"Pruned {pruned} idle rate-limit bucket(s)")
        return swept

    # --- Search cancellation ---

    def register_search(self, session_id: str) -> Result[asyncio.Event]:
        """
        Claims the cancel event for a search on behalf of a session. Only one
        search may run per session; a second claim fails until the first
        calls finish_search.
        """
        if session_id in self._cancel_events:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "a search is already running for this session")

        event = asyncio.Event()
        self._cancel_events[session_id] = event
        return Result.success(event)

    def finish_search(self, session_id: str) -> None:
        self._cancel_events.pop(session_id, None)

    # --- Lifecycle ---

    async def _sweep_loop(self) -> None:
        interval = self.config.SWEEP_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info("Session sweeper started")

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        for session_id in list(self._cancel_events):
            self._cancel_events[session_id].set()

        count = len(self._sessions)
        for session_id in list(self._sessions):
            self._release(session_id)
        self._cancel_events.clear()

        logger.info(f"Session store shut down, released {count} session(s)")

    def __len__(self) -> int:
        return len(self._sessions)


# Process-wide store used by the API layer
session_store = SessionStore()

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from facesearch.core.errors import ErrorCode, FaceSearchError
from facesearch.core.rate_limit import face_limiter, global_limiter, search_limiter
from facesearch.core.security import decode_operator_token
from facesearch.services.embedding_engine import EmbeddingEngine, embedding_engine
from facesearch.services.search_service import SearchService, search_service
from facesearch.services.session_store import SessionStore, session_store
from facesearch.utils.audit import SecurityEventType, Severity, audit_logger

LOCAL_HOSTS = {"127.0.0.1", "::1", "localhost"}

# Bearer tokens are optional on most routes; only operator routes require one.
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ClientContext:
    ip_address: str
    is_local: bool
    operator: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return self.operator is not None

    @property
    def can_see_embeddings(self) -> bool:
        """Raw embeddings only go to loopback callers and operators."""
        return self.is_local or self.is_operator


def get_client_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> ClientContext:
    """
    Identifies the caller: its address and, when a valid operator token
    is presented, the operator name. An invalid token is audited and the
    caller is treated as anonymous.
    """
    ip_address = request.client.host if request.client else "unknown"

    operator = None
    if credentials is not None:
        operator = decode_operator_token(credentials.credentials)
        if operator is None:
            audit_logger.log_security_event(
                SecurityEventType.FAILED_AUTH,
                Severity.MEDIUM,
                details={"endpoint": request.url.path},
                ip_address=ip_address,
            )

    return ClientContext(
        ip_address=ip_address,
        is_local=ip_address in LOCAL_HOSTS,
        operator=operator,
    )


def _enforce(limiter, ctx: ClientContext) -> None:
    if not limiter.try_acquire(ctx.ip_address):
        audit_logger.log_security_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            Severity.LOW,
            details={"limiter": limiter.name},
            ip_address=ctx.ip_address,
        )
        raise FaceSearchError(ErrorCode.RATE_LIMIT_EXCEEDED, f"{limiter.name} limit hit")


def rate_limit_global(ctx: ClientContext = Depends(get_client_context)) -> None:
    _enforce(global_limiter, ctx)


def rate_limit_face(ctx: ClientContext = Depends(get_client_context)) -> None:
    _enforce(face_limiter, ctx)


def rate_limit_search(ctx: ClientContext = Depends(get_client_context)) -> None:
    _enforce(search_limiter, ctx)


def require_operator(ctx: ClientContext = Depends(get_client_context)) -> ClientContext:
    """
    Dependency for audit and maintenance routes.

    Raises:
        FaceSearchError: UNAUTHORIZED without a valid operator token.
    """
    if not ctx.is_operator:
        raise FaceSearchError(ErrorCode.UNAUTHORIZED, "operator token required")
    return ctx


# Singleton accessors, overridden in tests through app.dependency_overrides

def get_engine() -> EmbeddingEngine:
    return embedding_engine


def get_session_store() -> SessionStore:
    return session_store


def get_search_service() -> SearchService:
    return search_service

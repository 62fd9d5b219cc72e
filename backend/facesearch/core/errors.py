from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from fastapi import status

T = TypeVar("T")


class ErrorCode(str, Enum):
    """
    Machine-readable error codes. They are part of the public RPC contract,
    so the values never change.
    """
    VALIDATION_ERROR              = "VALIDATION_ERROR"
    INVALID_FILE_TYPE             = "INVALID_FILE_TYPE"
    FILE_TOO_LARGE                = "FILE_TOO_LARGE"
    MALICIOUS_FILE_DETECTED       = "MALICIOUS_FILE_DETECTED"
    NO_FACE_DETECTED              = "NO_FACE_DETECTED"
    FACE_DETECTION_FAILED         = "FACE_DETECTION_FAILED"
    INVALID_THRESHOLD             = "INVALID_THRESHOLD"
    SESSION_NOT_FOUND             = "SESSION_NOT_FOUND"
    SESSION_EXPIRED               = "SESSION_EXPIRED"
    SESSION_CORRUPTED             = "SESSION_CORRUPTED"
    PROCESSING_FAILED             = "PROCESSING_FAILED"
    WEBSITE_UNREACHABLE           = "WEBSITE_UNREACHABLE"
    THUMBNAIL_EXTRACTION_FAILED   = "THUMBNAIL_EXTRACTION_FAILED"
    SIMILARITY_CALCULATION_FAILED = "SIMILARITY_CALCULATION_FAILED"
    RATE_LIMIT_EXCEEDED           = "RATE_LIMIT_EXCEEDED"
    INTERNAL_SERVER_ERROR         = "INTERNAL_SERVER_ERROR"
    UNAUTHORIZED                  = "UNAUTHORIZED"


# Human readable messages sent to clients. Exception text never leaves the server.
ERROR_MESSAGES = {
    ErrorCode.VALIDATION_ERROR              : "The request could not be validated.",
    ErrorCode.INVALID_FILE_TYPE             : "Unsupported file type. Please upload a JPEG, PNG or WebP image.",
    ErrorCode.FILE_TOO_LARGE                : "The uploaded file exceeds the maximum allowed size.",
    ErrorCode.MALICIOUS_FILE_DETECTED       : "The uploaded file was rejected for security reasons.",
    ErrorCode.NO_FACE_DETECTED              : "No face was detected in the image. Please use a clear, front-facing photo.",
    ErrorCode.FACE_DETECTION_FAILED         : "Face detection is currently unavailable. Please try again later.",
    ErrorCode.INVALID_THRESHOLD             : "The similarity threshold must be between 0.1 and 1.0.",
    ErrorCode.SESSION_NOT_FOUND             : "The search session was not found.",
    ErrorCode.SESSION_EXPIRED               : "The search session has expired. Please upload your image again.",
    ErrorCode.SESSION_CORRUPTED             : "The search session data is no longer readable. Please start a new search.",
    ErrorCode.PROCESSING_FAILED             : "The request could not be processed.",
    ErrorCode.WEBSITE_UNREACHABLE           : "A video source could not be reached.",
    ErrorCode.THUMBNAIL_EXTRACTION_FAILED   : "A video thumbnail could not be processed.",
    ErrorCode.SIMILARITY_CALCULATION_FAILED : "Similarity scores could not be computed.",
    ErrorCode.RATE_LIMIT_EXCEEDED           : "Too many requests. Please slow down and try again later.",
    ErrorCode.INTERNAL_SERVER_ERROR         : "An internal error occurred.",
    ErrorCode.UNAUTHORIZED                  : "Could not validate credentials.",
}

ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR              : status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_FILE_TYPE             : status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorCode.FILE_TOO_LARGE                : status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.MALICIOUS_FILE_DETECTED       : status.HTTP_400_BAD_REQUEST,
    ErrorCode.NO_FACE_DETECTED              : status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.FACE_DETECTION_FAILED         : status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.INVALID_THRESHOLD             : status.HTTP_400_BAD_REQUEST,
    ErrorCode.SESSION_NOT_FOUND             : status.HTTP_404_NOT_FOUND,
    ErrorCode.SESSION_EXPIRED               : status.HTTP_410_GONE,
    ErrorCode.SESSION_CORRUPTED             : status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.PROCESSING_FAILED             : status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.WEBSITE_UNREACHABLE           : status.HTTP_502_BAD_GATEWAY,
    ErrorCode.THUMBNAIL_EXTRACTION_FAILED   : status.HTTP_502_BAD_GATEWAY,
    ErrorCode.SIMILARITY_CALCULATION_FAILED : status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.RATE_LIMIT_EXCEEDED           : status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.INTERNAL_SERVER_ERROR         : status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.UNAUTHORIZED                  : status.HTTP_401_UNAUTHORIZED,
}


class FaceSearchError(Exception):
    """
    The single exception type raised by the services.

    `detail` is for logs only. The client always receives the fixed
    message from ERROR_MESSAGES.
    """

    def __init__(self, code: ErrorCode, detail: Optional[str] = None):
        self.code = code
        self.detail = detail or ERROR_MESSAGES[code]
        super().__init__(f"{code.value}: {self.detail}")

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.code]

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.code]


def error_body(code: ErrorCode) -> dict:
    """Builds the sanitized failure envelope for a given code."""
    return {
        "success": False,
        "error": {"code": code.value, "message": ERROR_MESSAGES[code]},
    }


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Tagged success/error value returned by the session store, the
    embedding engine and the similarity scorer. Callers branch on `ok`.
    """
    ok: bool
    value: Optional[T] = None
    code: Optional[ErrorCode] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: ErrorCode, detail: Optional[str] = None) -> "Result[T]":
        return cls(ok=False, code=code, detail=detail)

    def unwrap(self) -> T:
        """Returns the value or raises the matching FaceSearchError."""
        if not self.ok:
            raise FaceSearchError(self.code, self.detail)
        return self.value

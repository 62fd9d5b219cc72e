import math
import re
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urljoin, urlparse

import numpy as np

from facesearch.core.config import settings
from facesearch.core.errors import ErrorCode, FaceSearchError
from facesearch.core.logging import get_logger
from facesearch.utils.audit import SecurityEventType, Severity, audit_logger
from facesearch.utils.encryption import is_valid_session_id
from facesearch.utils.image_processing import decode_image_bytes

logger = get_logger(__name__)

MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 1.0
SUPPORTED_EMBEDDING_DIMS = (128, 512)

MIN_ASPECT_RATIO = 0.1
MAX_ASPECT_RATIO = 10.0

SCAN_WINDOW_BYTES = 1024
MAX_NUL_RUN = 10

MIME_EXTENSIONS = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png":  (".png",),
    "image/webp": (".webp",),
}

TEXT_SIGNATURES = (b"<script", b"javascript:", b"<iframe", b"<object", b"<embed")

# Executable headers: Windows PE, ELF, Java class / Mach-O fat binary
BINARY_SIGNATURES = (b"\x7fELF", b"\xca\xfe\xba\xbe")

_NUL_RUN = re.compile(rb"\x00{%d,}" % (MAX_NUL_RUN + 1))


@dataclass
class ValidatedImage:
    data: bytes
    mime_type: str
    image: np.ndarray

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


def _reject(
    code: ErrorCode,
    reason: str,
    event_type: SecurityEventType = SecurityEventType.INVALID_INPUT,
    severity: Severity = Severity.LOW,
    ip_address: Optional[str] = None,
) -> FaceSearchError:
    audit_logger.log_security_event(
        event_type,
        severity,
        details={"reason": reason, "code": code.value},
        ip_address=ip_address,
    )
    return FaceSearchError(code, reason)


def check_size(data: bytes, max_bytes: Optional[int] = None, ip_address: Optional[str] = None) -> None:
    limit = settings.MAX_UPLOAD_BYTES if max_bytes is None else max_bytes

    if not data:
        raise _reject(ErrorCode.VALIDATION_ERROR, "empty image payload", ip_address=ip_address)

    if len(data) > limit:
        raise _reject(
            ErrorCode.FILE_TOO_LARGE,
            f"payload of {len(data)} bytes exceeds {limit}",
            ip_address=ip_address,
        )


def detect_image_type(data: bytes) -> Optional[str]:
    """Returns the MIME type implied by the magic number, or None."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def check_mime_extension(
    detected_type: str,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> None:
    """
    Cross-checks the declared MIME type and file extension against the
    magic number. Either declaration may be absent (RPC byte arrays carry
    neither).
    """
    if mime_type:
        declared = mime_type.split(";")[0].strip().lower()
        if declared == "image/jpg":
            declared = "image/jpeg"
        if declared != detected_type:
            raise _reject(
                ErrorCode.INVALID_FILE_TYPE,
                f"declared MIME {declared} does not match content {detected_type}",
                event_type=SecurityEventType.SUSPICIOUS_REQUEST,
                severity=Severity.MEDIUM,
                ip_address=ip_address,
            )

    if filename:
        lowered = filename.lower()
        if not lowered.endswith(MIME_EXTENSIONS[detected_type]):
            raise _reject(
                ErrorCode.INVALID_FILE_TYPE,
                f"extension of {filename!r} does not match content {detected_type}",
                event_type=SecurityEventType.SUSPICIOUS_REQUEST,
                severity=Severity.MEDIUM,
                ip_address=ip_address,
            )


def scan_malicious_content(data: bytes) -> Optional[str]:
    """
    Scans the first KiB for script injection, executable headers and
    padding typical of polyglot files.

    Returns:
        Optional[str]: The reason for rejection, or None when the window is clean.
    """
    window = data[:SCAN_WINDOW_BYTES]
    lowered = window.lower()

    for signature in TEXT_SIGNATURES:
        if signature in lowered:
            return f"embedded {signature.decode()!r} sequence"

    if window[:2] == b"MZ":
        return "PE executable header"

    for signature in BINARY_SIGNATURES:
        if signature in window:
            return "executable header"

    if _NUL_RUN.search(window):
        return f"more than {MAX_NUL_RUN} consecutive NUL bytes"

    return None


def validate_image(
    data: bytes,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> ValidatedImage:
    """
    Runs every image check in order, cheapest first, and returns the
    decoded image.

    Raises:
        FaceSearchError: FILE_TOO_LARGE, INVALID_FILE_TYPE,
                         MALICIOUS_FILE_DETECTED or VALIDATION_ERROR.
    """
    check_size(data, ip_address=ip_address)

    detected_type = detect_image_type(data)
    if detected_type is None:
        raise _reject(ErrorCode.INVALID_FILE_TYPE, "unknown magic number", ip_address=ip_address)

    check_mime_extension(detected_type, mime_type, filename, ip_address=ip_address)

    reason = scan_malicious_content(data)
    if reason:
        raise _reject(
            ErrorCode.MALICIOUS_FILE_DETECTED,
            reason,
            event_type=SecurityEventType.MALICIOUS_FILE,
            severity=Severity.HIGH,
            ip_address=ip_address,
        )

    image = decode_image_bytes(data)
    if image is None:
        raise _reject(ErrorCode.VALIDATION_ERROR, "image could not be decoded", ip_address=ip_address)

    height, width = image.shape[:2]
    aspect_ratio = width / height
    if not MIN_ASPECT_RATIO <= aspect_ratio <= MAX_ASPECT_RATIO:
        raise _reject(
            ErrorCode.VALIDATION_ERROR,
            f"aspect ratio {aspect_ratio:.3f} outside [{MIN_ASPECT_RATIO}, {MAX_ASPECT_RATIO}]",
            ip_address=ip_address,
        )

    return ValidatedImage(data=data, mime_type=detected_type, image=image)


def validate_threshold(threshold: float) -> float:
    if (
        threshold is None
        or isinstance(threshold, bool)
        or not math.isfinite(threshold)
        or not MIN_THRESHOLD <= threshold <= MAX_THRESHOLD
    ):
        raise FaceSearchError(ErrorCode.INVALID_THRESHOLD, f"threshold {threshold!r} out of range")
    return float(threshold)


def validate_embedding(embedding: Sequence[float], expected_dim: Optional[int] = None) -> list:
    """
    Checks an embedding received over the wire.

    The length must be one of the supported sizes and equal to the size
    produced by the configured recognition model.
    """
    dim = settings.EMBEDDING_DIM if expected_dim is None else expected_dim

    if len(embedding) not in SUPPORTED_EMBEDDING_DIMS:
        raise FaceSearchError(
            ErrorCode.VALIDATION_ERROR,
            f"embedding length {len(embedding)} not in {SUPPORTED_EMBEDDING_DIMS}",
        )

    if len(embedding) != dim:
        raise FaceSearchError(
            ErrorCode.VALIDATION_ERROR,
            f"embedding length {len(embedding)} does not match model dimension {dim}",
        )

    values = [float(v) for v in embedding]
    if not all(math.isfinite(v) for v in values):
        raise FaceSearchError(ErrorCode.VALIDATION_ERROR, "embedding contains non-finite values")

    return values


def validate_session_id(session_id: str) -> str:
    if not is_valid_session_id(session_id):
        raise FaceSearchError(ErrorCode.VALIDATION_ERROR, "malformed session id")
    return session_id


def resolve_url(href: Optional[str], base_url: str) -> Optional[str]:
    """
    Resolves a link found on a site page against the site URL.

    Returns None for empty links and for anything that does not resolve to
    an absolute http(s) URL with a host.
    """
    if not href:
        return None

    href = href.strip()
    if not href:
        return None

    try:
        resolved = urljoin(base_url, href)
        parsed = urlparse(resolved)
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None

    return resolved

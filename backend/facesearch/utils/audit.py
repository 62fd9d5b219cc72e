import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from facesearch.core.logging import get_logger

logger = get_logger(__name__)

MAX_EVENTS = 1000


class SecurityEventType(str, Enum):
    FAILED_AUTH         = "failed_auth"
    SUSPICIOUS_REQUEST  = "suspicious_request"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    MALICIOUS_FILE      = "malicious_file"
    INVALID_INPUT       = "invalid_input"


class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    Severity.LOW      : logging.WARNING,
    Severity.MEDIUM   : logging.WARNING,
    Severity.HIGH     : logging.ERROR,
    Severity.CRITICAL : logging.ERROR,
}


@dataclass
class SecurityEvent:
    event_type: SecurityEventType
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditLogger:
    """
    Keeps the most recent security events in memory and mirrors every
    event to the application log. Nothing is written to disk besides
    the regular log file.
    """

    def __init__(self, max_events: int = MAX_EVENTS):
        self._events: deque = deque(maxlen=max_events)

    def log_security_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        details: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            details=details or {},
            session_id=session_id,
            ip_address=ip_address,
        )
        self._events.append(event)

        extra = {}
        if session_id:
            extra["session_id"] = session_id
        if ip_address:
            extra["client_ip"] = ip_address

        logger.log(
            _LOG_LEVELS[severity],
            f"Security event: {event_type.value} ({severity.value}) {event.details}",
            extra=extra,
        )
        return event

    def recent_events(
        self,
        limit: int = 100,
        event_type: Optional[SecurityEventType] = None,
    ) -> List[SecurityEvent]:
        events = [e for e in self._events if event_type is None or e.event_type == event_type]
        return events[-limit:]

    def clear(self) -> None:
        self._events.clear()


# Global instance shared by the guard and the API layer
audit_logger = AuditLogger()

"""
Error taxonomy for the merge engine.

Every failure that crosses an external call site is normalized into an
ErrorRecord so it can be kept in the session's bounded error list and
shown to the operator with sensitive substrings removed.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 150


class ErrorLevel(Enum):
    """Severity of a recorded error."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Broad origin of a recorded error."""
    CONFIGURATION = "configuration"
    DATA = "data"
    NETWORK = "network"
    PERMISSIONS = "permissions"
    SYSTEM = "system"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class RecordMergeError(Exception):
    """Base class for all engine errors."""

    level = ErrorLevel.ERROR
    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(RecordMergeError):
    """Matching configuration is absent, unreadable or malformed."""

    category = ErrorCategory.CONFIGURATION


class ValidationError(RecordMergeError):
    """A submission is missing required values.

    Raised before any call to an external collaborator is made.
    """

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        missing_fields: Optional[List[str]] = None,
        details: Optional[str] = None
    ):
        super().__init__(message, details)
        self.missing_fields = list(missing_fields or [])


class AccessError(RecordMergeError):
    """Insufficient permission on an object or field."""

    category = ErrorCategory.PERMISSIONS


class RemoteExecutionError(RecordMergeError):
    """The external store failed during a query, merge or schedule call."""

    category = ErrorCategory.NETWORK


class PartialResultError(RecordMergeError):
    """A job completed but reported per-record errors.

    Non-fatal: the job counts stay valid and are surfaced alongside it.
    """

    level = ErrorLevel.WARNING
    category = ErrorCategory.DATA

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, details="\n".join(errors or []))
        self.errors = list(errors or [])


# Applied in order; key/value pairs go before long ids so the key name survives.
_REDACTIONS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_]+(?:\.[A-Za-z0-9\-_]+){0,2}"), "Bearer [REDACTED]"),
    (re.compile(r"(password|token|key)(\s*[=:]\s*)[^&\s\"']+", re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(r"[A-Za-z0-9]{20,}"), "[REDACTED_ID]"),
]


def sanitize_message(message: Any) -> str:
    """Redact tokens, opaque ids and secrets from a message.

    Args:
        message: Anything with a string form

    Returns:
        The redacted text, at most MAX_MESSAGE_LENGTH characters long
    """
    if message is None:
        return ""

    text = str(message)
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)

    return text[:MAX_MESSAGE_LENGTH]


@dataclass(frozen=True)
class ErrorRecord:
    """Normalized, display-safe error."""
    id: str
    message: str
    source: str
    operation: str
    level: ErrorLevel = ErrorLevel.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    details: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            'id': self.id,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp,
            'source': self.source,
            'operation': self.operation,
            'level': self.level.value,
            'category': self.category.value,
        }


def _categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, RecordMergeError):
        return exc.category
    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMISSIONS
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, (KeyError, ValueError, TypeError)):
        return ErrorCategory.DATA
    return ErrorCategory.SYSTEM


def handle_error(
    source: str,
    operation: str,
    exc: BaseException,
    level: Optional[ErrorLevel] = None
) -> ErrorRecord:
    """Normalize an exception into an ErrorRecord.

    Args:
        source: Component that caught the error
        operation: Operation being performed
        exc: The exception
        level: Override for the severity

    Returns:
        Sanitized error record
    """
    if level is None:
        level = exc.level if isinstance(exc, RecordMergeError) else ErrorLevel.ERROR

    raw_message = str(exc) or type(exc).__name__
    raw_details = exc.details if isinstance(exc, RecordMergeError) else None

    record = ErrorRecord(
        id=f"err_{uuid.uuid4().hex[:12]}",
        message=sanitize_message(raw_message),
        details=sanitize_message(raw_details) if raw_details else None,
        source=source,
        operation=operation,
        level=level,
        category=_categorize(exc),
    )

    log = logger.warning if level in (ErrorLevel.INFO, ErrorLevel.WARNING) else logger.error
    log(f"[{source}] {operation} failed: {record.message}")

    return record

"""
Core value types and the error taxonomy.
"""

from .errors import (
    RecordMergeError,
    ConfigurationError,
    ValidationError,
    AccessError,
    RemoteExecutionError,
    PartialResultError,
    ErrorRecord,
    ErrorLevel,
    ErrorCategory,
    handle_error,
    sanitize_message,
)
from .models import (
    MatchConfiguration,
    MasterStrategy,
    RecordSnapshot,
    DuplicateGroup,
    FieldResolution,
    ResolutionStatus,
    MergeJob,
    JobStatus,
    JobStatusReport,
    MergeReport,
    DraftJob,
    ScheduledJob,
    MergeLog,
    is_blank,
)

__all__ = [
    'RecordMergeError',
    'ConfigurationError',
    'ValidationError',
    'AccessError',
    'RemoteExecutionError',
    'PartialResultError',
    'ErrorRecord',
    'ErrorLevel',
    'ErrorCategory',
    'handle_error',
    'sanitize_message',
    'MatchConfiguration',
    'MasterStrategy',
    'RecordSnapshot',
    'DuplicateGroup',
    'FieldResolution',
    'ResolutionStatus',
    'MergeJob',
    'JobStatus',
    'JobStatusReport',
    'MergeReport',
    'DraftJob',
    'ScheduledJob',
    'MergeLog',
    'is_blank',
]

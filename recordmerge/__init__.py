"""
RecordMerge - duplicate group resolution and merge orchestration.

Previews how duplicate business records would merge, executes merges with
an audit trail, and drives dry-run, merge and scheduled job lifecycles
behind a session store shared by every consumer of a session.
"""

__version__ = "0.1.0"

from .core import (
    RecordMergeError,
    ConfigurationError,
    ValidationError,
    AccessError,
    RemoteExecutionError,
    PartialResultError,
    MatchConfiguration,
    MasterStrategy,
    DuplicateGroup,
    RecordSnapshot,
    FieldResolution,
    ResolutionStatus,
    MergeJob,
    JobStatus,
    MergeLog,
)
from .session import MergeSession
from .utils.config import EngineConfig

__all__ = [
    '__version__',
    'RecordMergeError',
    'ConfigurationError',
    'ValidationError',
    'AccessError',
    'RemoteExecutionError',
    'PartialResultError',
    'MatchConfiguration',
    'MasterStrategy',
    'DuplicateGroup',
    'RecordSnapshot',
    'FieldResolution',
    'ResolutionStatus',
    'MergeJob',
    'JobStatus',
    'MergeLog',
    'MergeSession',
    'EngineConfig',
]

"""
Message payloads exchanged on the in-process bus.

One frozen dataclass per message variant. The bus routes on the payload
class; `type` is the wire name used when a message is logged or serialized.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

from ..core.errors import ErrorRecord


class MergeStatus:
    STARTING = "starting"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class StoreUpdated:
    """Whole-state change (reset or an action touching every section)."""
    type: ClassVar[str] = "store.updated"
    state: Any


@dataclass(frozen=True)
class StoreSectionUpdated:
    """One state section changed."""
    type: ClassVar[str] = "store.section.updated"
    section: str
    value: Any


@dataclass(frozen=True)
class MergeOperation:
    """Progress of one logical merge; correlated across observers."""
    type: ClassVar[str] = "merge.operation"
    status: str
    master_id: str
    duplicate_ids: Tuple[str, ...]
    merged_id: Optional[str] = None
    errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DuplicatesMerged:
    type: ClassVar[str] = "duplicates.merged"
    master_id: str
    merged_ids: Tuple[str, ...]
    object_type: str


@dataclass(frozen=True)
class JobStarted:
    type: ClassVar[str] = "job.started"
    job_id: str
    config_id: str
    is_dry_run: bool


@dataclass(frozen=True)
class JobCompleted:
    type: ClassVar[str] = "job.completed"
    job_id: str
    status: str
    records_processed: int
    duplicates_found: int
    records_merged: int = 0


@dataclass(frozen=True)
class JobScheduled:
    type: ClassVar[str] = "job.scheduled"
    schedule_id: str
    config_id: str
    cron_expression: str


@dataclass(frozen=True)
class ErrorOccurred:
    type: ClassVar[str] = "error.occurred"
    error: ErrorRecord


@dataclass(frozen=True)
class BulkMergeStarting:
    type: ClassVar[str] = "bulk.merge.starting"
    group_ids: Tuple[str, ...]


@dataclass(frozen=True)
class BulkMergeCompleted:
    type: ClassVar[str] = "bulk.merge.completed"
    succeeded: Tuple[str, ...]
    failed: Tuple[str, ...]
    skipped: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GroupMergeStarting:
    type: ClassVar[str] = "group.merge.starting"
    group_id: str


@dataclass(frozen=True)
class GroupMergeCompleted:
    type: ClassVar[str] = "group.merge.completed"
    group_id: str
    merged_id: Optional[str]


@dataclass(frozen=True)
class GroupMergeError:
    type: ClassVar[str] = "group.merge.error"
    group_id: str
    errors: Tuple[str, ...]


MessagePayload = Union[
    StoreUpdated,
    StoreSectionUpdated,
    MergeOperation,
    DuplicatesMerged,
    JobStarted,
    JobCompleted,
    JobScheduled,
    ErrorOccurred,
    BulkMergeStarting,
    BulkMergeCompleted,
    GroupMergeStarting,
    GroupMergeCompleted,
    GroupMergeError,
]


def new_correlation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Message:
    """Envelope around a payload."""
    payload: MessagePayload
    source: str
    correlation_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def type(self) -> str:
        return self.payload.type

    def to_dict(self) -> Dict[str, Any]:
        """Envelope summary for logs; state payloads are reduced to their section."""
        payload = self.payload
        if isinstance(payload, StoreSectionUpdated):
            body: Dict[str, Any] = {'section': payload.section}
        elif isinstance(payload, StoreUpdated):
            body = {}
        elif isinstance(payload, ErrorOccurred):
            body = {'error': payload.error.to_dict()}
        else:
            body = asdict(payload)
        return {
            'type': self.type,
            'payload': body,
            'timestamp': self.timestamp,
            'source': self.source,
            'correlation_id': self.correlation_id,
        }

"""
Value types shared by the merge engine.

All types are frozen dataclasses; "mutations" return new instances via
dataclasses.replace so snapshots handed to listeners never change under them.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ValidationError


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


class MasterStrategy(Enum):
    """How the master record of a duplicate group is picked."""
    OLDEST_CREATED = "OldestCreated"
    MOST_COMPLETE = "MostComplete"
    MOST_RECENT = "MostRecent"

    @classmethod
    def parse(cls, value: Any) -> 'MasterStrategy':
        """Parse a strategy from its configuration value.

        Accepts the enum itself, its value ("OldestCreated"), or its name in
        any case ("oldest_created").

        Raises:
            ValueError: If the value names no known strategy
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for strategy in cls:
            if text == strategy.value or text.lower() == strategy.value.lower():
                return strategy
            if text.upper() == strategy.name:
                return strategy
        raise ValueError(f"Unknown master strategy: {value!r}")


class ResolutionStatus(Enum):
    """Outcome of resolving one field across a group."""
    UNCHANGED = "unchanged"
    FILLED = "filled"
    CONFLICT = "conflict"


STATUS_LABELS = {
    ResolutionStatus.CONFLICT: "Conflict - Master record value will be preserved",
    ResolutionStatus.FILLED: "Empty in master - Value filled from duplicate record",
    ResolutionStatus.UNCHANGED: "Unchanged - Master record value will be preserved",
}


class JobStatus(Enum):
    """Lifecycle states of a merge job."""
    DRAFT = "Draft"
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        """True once the job can no longer change."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED)

    @classmethod
    def parse(cls, value: Any) -> 'JobStatus':
        """Map an executor status string onto a lifecycle state.

        Batch executors report a few intermediate states of their own
        (Holding, Preparing, Processing); they fold into Queued/Running.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().capitalize()
        aliases = {
            'Holding': cls.QUEUED,
            'Preparing': cls.QUEUED,
            'Processing': cls.RUNNING,
        }
        if text in aliases:
            return aliases[text]
        return cls(text)


@dataclass(frozen=True)
class MatchConfiguration:
    """Declarative rule set governing how duplicates are found and merged."""
    id: str
    label: str
    object_type: str
    match_fields: Tuple[str, ...]
    master_strategy: MasterStrategy = MasterStrategy.OLDEST_CREATED
    batch_size: int = 200
    active: bool = True
    required_fields: Tuple[str, ...] = ()

    @staticmethod
    def split_fields(raw: Any) -> Tuple[str, ...]:
        """Parse "f1, f2,f1" into an ordered, de-duplicated tuple."""
        if raw is None:
            return ()
        parts = raw.split(',') if isinstance(raw, str) else list(raw)
        seen = []
        for part in parts:
            name = str(part).strip()
            if name and name not in seen:
                seen.append(name)
        return tuple(seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'label': self.label,
            'object_type': self.object_type,
            'match_fields': list(self.match_fields),
            'master_strategy': self.master_strategy.value,
            'batch_size': self.batch_size,
            'active': self.active,
            'required_fields': list(self.required_fields),
        }


@dataclass(frozen=True)
class RecordSnapshot:
    """Field values of one record as loaded from the record store."""
    record_id: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    def value(self, field_name: str) -> Any:
        """Field value, with blank strings read as missing."""
        value = self.fields.get(field_name)
        return None if is_blank(value) else value

    def completeness(self) -> int:
        """Number of non-blank fields."""
        return sum(1 for value in self.fields.values() if not is_blank(value))


@dataclass(frozen=True)
class DuplicateGroup:
    """A cluster of records believed to represent one real-world entity."""
    id: str
    object_type: str
    member_record_ids: FrozenSet[str]
    match_score: float = 0.0
    master_record_id: Optional[str] = None
    excluded: bool = False
    flagged: bool = False
    expanded: bool = False

    def __post_init__(self):
        # Accept any iterable of ids on construction
        if not isinstance(self.member_record_ids, frozenset):
            object.__setattr__(self, 'member_record_ids', frozenset(self.member_record_ids))
        if not 0 <= self.match_score <= 100:
            raise ValidationError(f"Match score must be within 0-100, got {self.match_score}")
        if self.master_record_id is not None and self.master_record_id not in self.member_record_ids:
            raise ValidationError(
                f"Master {self.master_record_id} is not a member of group {self.id}",
                missing_fields=['master_record_id']
            )

    def sorted_members(self) -> List[str]:
        """Member ids in the stable order used for every scan of the group."""
        return sorted(self.member_record_ids)

    def duplicate_ids(self) -> List[str]:
        """Non-master members, sorted by record id."""
        return [rid for rid in self.sorted_members() if rid != self.master_record_id]

    def with_master(self, record_id: str) -> 'DuplicateGroup':
        return replace(self, master_record_id=record_id)

    def with_excluded(self, excluded: bool = True) -> 'DuplicateGroup':
        return replace(self, excluded=excluded)

    def with_flagged(self, flagged: bool = True) -> 'DuplicateGroup':
        return replace(self, flagged=flagged)

    def with_expanded(self, expanded: bool = True) -> 'DuplicateGroup':
        return replace(self, expanded=expanded)


@dataclass(frozen=True)
class FieldResolution:
    """Computed value and status for one field across a duplicate group."""
    field_name: str
    label: str
    master_value: Any
    candidate_values: Tuple[Any, ...]
    status: ResolutionStatus
    chosen_value: Any
    source_record_id: Optional[str] = None
    explicitly_chosen: bool = False

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field_name': self.field_name,
            'label': self.label,
            'master_value': self.master_value,
            'candidate_values': list(self.candidate_values),
            'status': self.status.value,
            'status_label': self.status_label,
            'chosen_value': self.chosen_value,
            'source_record_id': self.source_record_id,
            'explicitly_chosen': self.explicitly_chosen,
        }


@dataclass(frozen=True)
class MergeJob:
    """One dry-run or merge execution of a configuration."""
    id: str
    config_id: str
    is_dry_run: bool
    batch_size: int
    status: JobStatus = JobStatus.QUEUED
    records_processed: int = 0
    duplicates_found: int = 0
    records_merged: int = 0
    error_messages: Tuple[str, ...] = ()
    completion_time: Optional[datetime] = None
    schedule_id: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def job_type_label(self) -> str:
        return "Dry Run (Find Only)" if self.is_dry_run else "Merge Operation"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'config_id': self.config_id,
            'is_dry_run': self.is_dry_run,
            'job_type': self.job_type_label,
            'batch_size': self.batch_size,
            'status': self.status.value,
            'records_processed': self.records_processed,
            'duplicates_found': self.duplicates_found,
            'records_merged': self.records_merged,
            'error_messages': list(self.error_messages),
            'completion_time': self.completion_time.isoformat() if self.completion_time else None,
            'schedule_id': self.schedule_id,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
        }


@dataclass(frozen=True)
class DraftJob:
    """The single locally persisted, not-yet-submitted job configuration."""
    config_id: str
    object_type: str
    batch_size: int = 200
    match_fields: Tuple[str, ...] = ()
    status: str = "draft"
    timestamp: Optional[str] = None
    last_modified: Optional[str] = None
    saved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'config_id': self.config_id,
            'object_type': self.object_type,
            'batch_size': self.batch_size,
            'match_fields': list(self.match_fields),
            'status': self.status,
            'timestamp': self.timestamp,
            'last_modified': self.last_modified,
            'saved_by': self.saved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DraftJob':
        return cls(
            config_id=data['config_id'],
            object_type=data.get('object_type', ''),
            batch_size=int(data.get('batch_size', 200)),
            match_fields=tuple(data.get('match_fields') or ()),
            status=data.get('status', 'draft'),
            timestamp=data.get('timestamp'),
            last_modified=data.get('last_modified'),
            saved_by=data.get('saved_by'),
        )


@dataclass(frozen=True)
class ScheduledJob:
    """A recurring job definition; each recurrence spawns a Queued MergeJob."""
    id: str
    config_id: str
    cron_expression: str
    job_name: str
    is_dry_run: bool
    batch_size: int = 200
    spawned_job_ids: Tuple[str, ...] = ()
    next_fire_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'config_id': self.config_id,
            'cron_expression': self.cron_expression,
            'job_name': self.job_name,
            'is_dry_run': self.is_dry_run,
            'batch_size': self.batch_size,
            'spawned_job_ids': list(self.spawned_job_ids),
            'next_fire_time': self.next_fire_time.isoformat() if self.next_fire_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledJob':
        next_fire = data.get('next_fire_time')
        return cls(
            id=data['id'],
            config_id=data['config_id'],
            cron_expression=data['cron_expression'],
            job_name=data['job_name'],
            is_dry_run=bool(data['is_dry_run']),
            batch_size=int(data.get('batch_size', 200)),
            spawned_job_ids=tuple(data.get('spawned_job_ids') or ()),
            next_fire_time=datetime.fromisoformat(next_fire) if next_fire else None,
        )


@dataclass(frozen=True)
class MergeLog:
    """Append-only audit record of one successful merge."""
    master_id: str
    merged_ids: Tuple[str, ...]
    object_type: str
    initiator: str = "system"
    job_id: Optional[str] = None
    config_id: Optional[str] = None
    field_resolution_snapshot: Tuple[Dict[str, Any], ...] = ()
    note: Optional[str] = None
    idempotency_key: Optional[str] = None
    execution_time: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    @property
    def records_merged(self) -> int:
        return len(self.merged_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'master_id': self.master_id,
            'merged_ids': list(self.merged_ids),
            'records_merged': self.records_merged,
            'object_type': self.object_type,
            'config_id': self.config_id,
            'initiator': self.initiator,
            'field_resolution_snapshot': list(self.field_resolution_snapshot),
            'note': self.note,
            'idempotency_key': self.idempotency_key,
            'execution_time': self.execution_time.isoformat(),
        }


@dataclass(frozen=True)
class MergeReport:
    """One merge performed by a batch job, as reported by the executor."""
    master_id: str
    merged_ids: Tuple[str, ...]
    object_type: str


@dataclass(frozen=True)
class JobStatusReport:
    """Status of a submitted job as reported by the batch executor."""
    job_id: str
    status: JobStatus
    records_processed: int = 0
    duplicates_found: int = 0
    records_merged: int = 0
    error_messages: Tuple[str, ...] = ()
    completion_time: Optional[datetime] = None
    merges: Tuple[MergeReport, ...] = ()
    groups: Tuple[DuplicateGroup, ...] = ()

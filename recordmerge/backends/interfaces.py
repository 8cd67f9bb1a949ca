"""
Interfaces of the external collaborators the engine drives.

The record store, batch executor and scheduler live outside the engine;
any object with these methods can be plugged into a MergeSession.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

from ..core.models import JobStatusReport, RecordSnapshot, ScheduledJob


@dataclass(frozen=True)
class MergeResponse:
    """Outcome of a merge call on the record store."""
    success: bool
    merged_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class RecordStore(Protocol):
    """Backing store holding the business records."""

    async def load_records(
        self,
        object_type: str,
        record_ids: Sequence[str],
        fields: Optional[Sequence[str]] = None
    ) -> Dict[str, RecordSnapshot]:
        ...

    async def merge_records(
        self,
        master_id: str,
        duplicate_ids: Sequence[str],
        object_type: str
    ) -> MergeResponse:
        ...


class BatchExecutor(Protocol):
    """Runs duplicate-finding (and optionally merging) jobs."""

    async def submit_job(self, config_id: str, is_dry_run: bool, batch_size: int) -> str:
        ...

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        ...


class JobScheduler(Protocol):
    """Recurring job scheduler; accepts full cron syntax."""

    async def schedule_job(
        self,
        config_id: str,
        cron_expression: str,
        job_name: str,
        is_dry_run: bool,
        batch_size: int
    ) -> str:
        ...

    async def delete_scheduled_job(self, schedule_id: str) -> None:
        ...

    async def list_scheduled_jobs(self) -> List[ScheduledJob]:
        ...


class StatisticsProvider(Protocol):
    """Aggregate duplicate and merge counts over a time range."""

    async def get_statistics(self, time_range: str):
        ...

"""
In-process implementations of the external collaborators.

They back the CLI, the demo API and the tests: records live in memory
(optionally loaded from a JSON dataset), jobs advance one lifecycle step
per status poll, and schedules are kept in a dictionary.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.errors import ConfigurationError, RemoteExecutionError, ValidationError
from ..core.models import (
    JobStatus,
    JobStatusReport,
    MergeReport,
    RecordSnapshot,
    ScheduledJob,
)
from ..data.configuration_loader import ConfigurationResolver
from ..matching.grouper import DuplicateGrouper
from ..merge.master_selector import select_master
from .interfaces import MergeResponse

logger = logging.getLogger(__name__)

# Dataset keys carrying record metadata rather than field values
ID_KEY = "Id"
CREATED_KEY = "CreatedDate"
MODIFIED_KEY = "LastModifiedDate"


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def snapshot_from_dict(data: Dict[str, Any]) -> RecordSnapshot:
    """Build a snapshot from a dataset row like {"Id": ..., "Name": ...}."""
    fields = {k: v for k, v in data.items() if k not in (ID_KEY, CREATED_KEY, MODIFIED_KEY)}
    return RecordSnapshot(
        record_id=str(data[ID_KEY]),
        fields=fields,
        created_at=_parse_time(data.get(CREATED_KEY)),
        modified_at=_parse_time(data.get(MODIFIED_KEY)),
    )


def snapshot_to_dict(snapshot: RecordSnapshot) -> Dict[str, Any]:
    """Dataset row for a snapshot; the inverse of snapshot_from_dict."""
    row = {ID_KEY: snapshot.record_id, **snapshot.fields}
    if snapshot.created_at:
        row[CREATED_KEY] = snapshot.created_at.isoformat()
    if snapshot.modified_at:
        row[MODIFIED_KEY] = snapshot.modified_at.isoformat()
    return row


class LocalRecordStore:
    """Records kept in memory, keyed by object type then record id."""

    def __init__(self, records: Optional[Dict[str, Sequence[RecordSnapshot]]] = None):
        self.records: Dict[str, Dict[str, RecordSnapshot]] = {}
        for object_type, snapshots in (records or {}).items():
            self.records[object_type] = {s.record_id: s for s in snapshots}
        self.merge_calls: List[Dict[str, Any]] = []

    @classmethod
    def from_file(cls, path: str | Path) -> 'LocalRecordStore':
        """Load a dataset of the form {"Account": [{"Id": ..., ...}, ...]}."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls({
            object_type: [snapshot_from_dict(row) for row in rows]
            for object_type, rows in data.items()
        })

    def save(self, path: str | Path) -> None:
        """Write the dataset back in the format from_file reads."""
        data = {
            object_type: [snapshot_to_dict(s) for s in self.all_records(object_type)]
            for object_type in sorted(self.records)
        }
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)

    def all_records(self, object_type: str) -> List[RecordSnapshot]:
        return sorted(self.records.get(object_type, {}).values(), key=lambda s: s.record_id)

    async def load_records(
        self,
        object_type: str,
        record_ids: Sequence[str],
        fields: Optional[Sequence[str]] = None
    ) -> Dict[str, RecordSnapshot]:
        table = self.records.get(object_type, {})
        loaded = {}
        for record_id in record_ids:
            snapshot = table.get(record_id)
            if snapshot is None:
                continue
            if fields is not None:
                snapshot = replace(snapshot, fields={f: snapshot.fields.get(f) for f in fields})
            loaded[record_id] = snapshot
        return loaded

    async def merge_records(
        self,
        master_id: str,
        duplicate_ids: Sequence[str],
        object_type: str
    ) -> MergeResponse:
        """Fold duplicates into the master: blank master fields are filled, duplicates removed."""
        self.merge_calls.append({
            'master_id': master_id,
            'duplicate_ids': list(duplicate_ids),
            'object_type': object_type,
        })

        table = self.records.get(object_type, {})
        missing = [rid for rid in (master_id, *duplicate_ids) if rid not in table]
        if missing:
            return MergeResponse(
                success=False,
                errors=[f"Records not found: {', '.join(missing)}"]
            )

        master = table[master_id]
        fields = dict(master.fields)
        for record_id in sorted(duplicate_ids):
            for name, value in table[record_id].fields.items():
                if fields.get(name) in (None, "") and value not in (None, ""):
                    fields[name] = value
            del table[record_id]

        table[master_id] = replace(master, fields=fields, modified_at=datetime.now())
        return MergeResponse(success=True, merged_id=master_id)


class LocalBatchExecutor:
    """Runs duplicate jobs against a LocalRecordStore.

    Each status poll moves a job one step: Queued, Running, then a
    terminal state with results computed from the store.
    """

    def __init__(
        self,
        record_store: LocalRecordStore,
        resolver: ConfigurationResolver,
        grouper: Optional[DuplicateGrouper] = None
    ):
        self.record_store = record_store
        self.resolver = resolver
        self.grouper = grouper or DuplicateGrouper()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._counter = 0

    async def submit_job(self, config_id: str, is_dry_run: bool, batch_size: int) -> str:
        try:
            self.resolver.get_configuration(config_id)
        except ConfigurationError as e:
            raise RemoteExecutionError(f"Cannot start job: {e.message}") from e

        self._counter += 1
        job_id = f"job-{self._counter:04d}"
        self._jobs[job_id] = {
            'config_id': config_id,
            'is_dry_run': is_dry_run,
            'batch_size': batch_size,
            'report': JobStatusReport(job_id=job_id, status=JobStatus.QUEUED),
        }
        logger.info(f"Submitted {'dry run' if is_dry_run else 'merge'} job {job_id} for {config_id}")
        return job_id

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        job = self._jobs.get(job_id)
        if job is None:
            raise RemoteExecutionError(f"Unknown job: {job_id}")

        report: JobStatusReport = job['report']
        if report.status == JobStatus.QUEUED:
            report = replace(report, status=JobStatus.RUNNING)
        elif report.status == JobStatus.RUNNING:
            report = await self._run(job_id, job)
        job['report'] = report
        return report

    def abort(self, job_id: str) -> None:
        job = self._jobs[job_id]
        if not job['report'].status.is_terminal:
            job['report'] = replace(job['report'], status=JobStatus.ABORTED, completion_time=datetime.now())

    async def _run(self, job_id: str, job: Dict[str, Any]) -> JobStatusReport:
        configuration = self.resolver.get_configuration(job['config_id'])
        records = self.record_store.all_records(configuration.object_type)
        groups = self.grouper.find_groups(records, configuration.match_fields, configuration.object_type)
        snapshots = {r.record_id: r for r in records}

        groups = [
            g.with_master(select_master(g, configuration.master_strategy, snapshots))
            for g in groups
        ]
        duplicates_found = sum(len(g.member_record_ids) - 1 for g in groups)

        merges: List[MergeReport] = []
        errors: List[str] = []
        if not job['is_dry_run']:
            for group in groups:
                response = await self.record_store.merge_records(
                    group.master_record_id, group.duplicate_ids(), configuration.object_type
                )
                if response.success:
                    merges.append(MergeReport(
                        master_id=group.master_record_id,
                        merged_ids=tuple(group.duplicate_ids()),
                        object_type=configuration.object_type,
                    ))
                else:
                    errors.extend(response.errors)

        return JobStatusReport(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            records_processed=len(records),
            duplicates_found=duplicates_found,
            records_merged=sum(len(m.merged_ids) for m in merges),
            error_messages=tuple(errors),
            completion_time=datetime.now(),
            merges=tuple(merges),
            groups=tuple(groups),
        )


class LocalScheduler:
    """Keeps scheduled jobs in memory; fire() simulates one recurrence.

    With a state file the schedules survive the process: they are loaded
    on start and written after every change.
    """

    def __init__(
        self,
        executor: Optional[LocalBatchExecutor] = None,
        state_file: Optional[str | Path] = None
    ):
        self.executor = executor
        self.state_file = Path(state_file) if state_file else None
        self._schedules: Dict[str, ScheduledJob] = {}
        self._counter = 0
        self.calls = 0
        self._load_state()

    def _load_state(self) -> None:
        """Load persisted schedules."""
        if self.state_file is None or not self.state_file.exists():
            return
        with open(self.state_file, 'r', encoding='utf-8') as f:
            state = json.load(f)
        self._counter = state.get('counter', 0)
        for data in state.get('schedules', []):
            scheduled = ScheduledJob.from_dict(data)
            self._schedules[scheduled.id] = scheduled

    def _save_state(self) -> None:
        """Save schedules."""
        if self.state_file is None:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        state = {
            'counter': self._counter,
            'schedules': [self._schedules[k].to_dict() for k in sorted(self._schedules)],
        }
        with open(self.state_file, 'w', encoding='utf-8') as f:
            json.dump(state, f, indent=2)

    async def schedule_job(
        self,
        config_id: str,
        cron_expression: str,
        job_name: str,
        is_dry_run: bool,
        batch_size: int
    ) -> str:
        self.calls += 1
        if len(cron_expression.split()) not in (6, 7):
            raise RemoteExecutionError(f"Invalid cron expression: {cron_expression}")

        self._counter += 1
        schedule_id = f"sched-{self._counter:04d}"
        self._schedules[schedule_id] = ScheduledJob(
            id=schedule_id,
            config_id=config_id,
            cron_expression=cron_expression,
            job_name=job_name,
            is_dry_run=is_dry_run,
            batch_size=batch_size,
        )
        self._save_state()
        return schedule_id

    async def delete_scheduled_job(self, schedule_id: str) -> None:
        self.calls += 1
        if self._schedules.pop(schedule_id, None) is None:
            raise RemoteExecutionError(f"Unknown scheduled job: {schedule_id}")
        self._save_state()

    async def list_scheduled_jobs(self) -> List[ScheduledJob]:
        self.calls += 1
        return [self._schedules[k] for k in sorted(self._schedules)]

    async def fire(self, schedule_id: str) -> str:
        """Start one recurrence of a schedule; returns the new job id."""
        if self.executor is None:
            raise ValidationError("No executor attached to fire schedules")
        schedule = self._schedules[schedule_id]
        return await self.executor.submit_job(schedule.config_id, schedule.is_dry_run, schedule.batch_size)

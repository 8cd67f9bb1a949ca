"""
Job lifecycle orchestration.

States: Draft -> Queued -> Running -> {Completed, Failed, Aborted}.
The draft is a single slot held in the session store. Submission moves it
to Queued; the batch executor drives the job from there and this module
only observes: each observed transition is checked against the lifecycle
table, and reaching a terminal state triggers the completion work
(cache invalidation, statistics, audit logs for merge jobs) exactly once.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Sequence

from ..backends.interfaces import BatchExecutor, StatisticsProvider
from ..core.errors import (
    PartialResultError,
    RemoteExecutionError,
    ValidationError,
)
from ..core.models import DraftJob, JobStatus, JobStatusReport, MergeJob, MergeLog
from ..messaging.bus import MessageBus
from ..messaging.messages import JobCompleted, JobStarted
from ..state.actions import ActionType
from ..state.store import SessionStore
from ..utils.audit_trail import MergeAuditTrail

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.QUEUED}),
    JobStatus.QUEUED: frozenset({
        JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED,
    }),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.ABORTED: frozenset(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """True if a job may move from current to new (staying put is allowed)."""
    return new == current or new in ALLOWED_TRANSITIONS[current]


class JobOrchestrator:
    """Drives dry-run and merge jobs through their lifecycle."""

    SOURCE = "job-orchestrator"

    def __init__(
        self,
        store: SessionStore,
        executor: BatchExecutor,
        audit: MergeAuditTrail,
        bus: Optional[MessageBus] = None,
        statistics: Optional[StatisticsProvider] = None,
        initiator: str = "system"
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Session store holding the draft and active jobs
            executor: External batch executor
            audit: Audit trail for job history and merge logs
            bus: Message bus for job messages
            statistics: Provider refreshed when a job completes
            initiator: User recorded on merge logs written for batch merges
        """
        self.store = store
        self.executor = executor
        self.audit = audit
        self.bus = bus
        self.statistics = statistics
        self.initiator = initiator
        self._object_types: Dict[str, Optional[str]] = {}

    def _publish(self, payload) -> None:
        if self.bus is not None:
            self.bus.publish(payload, source=self.SOURCE)

    # Draft slot

    def save_draft(
        self,
        config_id: str,
        object_type: Optional[str] = None,
        batch_size: Optional[int] = None,
        match_fields: Optional[Sequence[str]] = None
    ) -> DraftJob:
        """Save the in-progress job choice into the draft slot.

        Values not given are taken from the matching configuration when it
        is loaded in the session, otherwise from the existing draft.
        """
        state = self.store.get_state()
        existing = state.draft_job if state.draft_job and state.draft_job.config_id == config_id else None
        configuration = next(
            (c for c in state.configurations.items if c.id == config_id), None
        )

        if object_type is None:
            object_type = configuration.object_type if configuration else (existing.object_type if existing else "")
        if match_fields is None:
            match_fields = configuration.match_fields if configuration else (existing.match_fields if existing else ())
        if batch_size is None:
            if existing:
                batch_size = existing.batch_size
            elif configuration:
                batch_size = configuration.batch_size
            else:
                batch_size = self.store.config.default_batch_size

        now = datetime.now().isoformat()
        draft = DraftJob(
            config_id=config_id,
            object_type=object_type,
            batch_size=batch_size,
            match_fields=tuple(match_fields),
            timestamp=existing.timestamp if existing and existing.timestamp else now,
            last_modified=now,
            saved_by=self.initiator,
        )
        self.store.dispatch(ActionType.SAVE_DRAFT_JOB, draft)
        return draft

    def load_draft(self) -> Optional[DraftJob]:
        """Restore the draft slot from durable storage."""
        return self.store.load_draft()

    def discard_draft(self) -> None:
        self.store.dispatch(ActionType.CLEAR_DRAFT_JOB)

    def _validate_draft(self, draft: Optional[DraftJob], batch_size: int) -> None:
        if draft is None:
            raise ValidationError("No draft job to submit", missing_fields=['config_id'])
        missing = []
        if not draft.config_id:
            missing.append('config_id')
        if not 1 <= batch_size <= self.store.config.max_batch_size:
            missing.append('batch_size')
        if missing:
            raise ValidationError(
                f"Draft job is incomplete: {', '.join(missing)}", missing_fields=missing
            )

    # Submission

    async def submit(self, is_dry_run: bool, batch_size: Optional[int] = None) -> MergeJob:
        """Submit the draft as a dry-run or merge job (Draft -> Queued).

        Raises:
            ValidationError: If the draft is missing or incomplete (no call is made)
            RemoteExecutionError: If the executor could not be reached; the
                draft is kept and the error recorded
        """
        draft = self.store.get_state().draft_job
        if batch_size is None and draft is not None:
            batch_size = draft.batch_size
        self._validate_draft(draft, batch_size or 0)

        try:
            job_id = await self.executor.submit_job(draft.config_id, is_dry_run, batch_size)
        except Exception as e:
            record = self.store.report_error(self.SOURCE, "submit_job", e)
            raise RemoteExecutionError(f"Job submission failed: {record.message}") from e

        job = MergeJob(
            id=job_id,
            config_id=draft.config_id,
            is_dry_run=is_dry_run,
            batch_size=batch_size,
            status=JobStatus.QUEUED,
            submitted_at=datetime.now(),
        )
        self._object_types[job_id] = draft.object_type or None

        self.store.dispatch(ActionType.UPSERT_JOB, job)
        self.store.dispatch(ActionType.CLEAR_DRAFT_JOB)
        self.store.invalidate("jobs")
        self.audit.record_job(job, draft.object_type or None)
        self._publish(JobStarted(job.id, job.config_id, is_dry_run))

        logger.info(f"Submitted {job.job_type_label} {job.id} for {job.config_id}")
        return job

    async def run_dry_run(self, batch_size: Optional[int] = None) -> MergeJob:
        return await self.submit(True, batch_size)

    async def run_merge_job(self, batch_size: Optional[int] = None) -> MergeJob:
        return await self.submit(False, batch_size)

    def track_job(self, job: MergeJob, object_type: Optional[str] = None) -> MergeJob:
        """Start observing a job submitted elsewhere (e.g. by a schedule)."""
        self._object_types[job.id] = object_type
        self.store.dispatch(ActionType.UPSERT_JOB, job)
        return job

    # Observation

    async def refresh_job(self, job_id: str) -> MergeJob:
        """Poll the executor for one job and apply what it reports.

        Raises:
            KeyError: If the job is not tracked by this session
            RemoteExecutionError: If the status call failed
        """
        if self.store.get_state().jobs.get_active(job_id) is None:
            raise KeyError(f"Job {job_id} is not tracked")

        try:
            report = await self.executor.get_job_status(job_id)
        except Exception as e:
            record = self.store.report_error(self.SOURCE, "get_job_status", e)
            raise RemoteExecutionError(f"Status check failed for {job_id}: {record.message}") from e

        return await self.apply_report(report)

    async def refresh_active_jobs(self) -> List[MergeJob]:
        """Poll every non-terminal job, one after another."""
        refreshed = []
        for job in self.store.get_state().jobs.active:
            if job.is_terminal:
                refreshed.append(job)
                continue
            refreshed.append(await self.refresh_job(job.id))
        return refreshed

    async def watch(
        self,
        job_id: str,
        interval: Optional[float] = None,
        max_polls: Optional[int] = None
    ) -> MergeJob:
        """Poll a job until it reaches a terminal state.

        Args:
            job_id: Job to watch
            interval: Seconds between polls; defaults to the configured interval
            max_polls: Give up (returning the last known job) after this many polls
        """
        interval = self.store.config.poll_interval if interval is None else interval
        polls = 0
        while True:
            job = await self.refresh_job(job_id)
            polls += 1
            if job.is_terminal or (max_polls is not None and polls >= max_polls):
                return job
            await self.store.scheduler.sleep(interval)

    async def apply_report(self, report: JobStatusReport) -> MergeJob:
        """Apply an executor status report to the tracked job."""
        current = self.store.get_state().jobs.get_active(report.job_id)
        if current is None:
            raise KeyError(f"Job {report.job_id} is not tracked")

        if current.is_terminal:
            return current
        if not can_transition(current.status, report.status):
            logger.warning(
                f"Ignoring illegal transition {current.status.value} -> "
                f"{report.status.value} for job {current.id}"
            )
            return current

        updated = replace(
            current,
            status=report.status,
            records_processed=report.records_processed,
            duplicates_found=report.duplicates_found,
            records_merged=report.records_merged,
            error_messages=tuple(report.error_messages),
            completion_time=report.completion_time,
        )
        self.store.dispatch(ActionType.UPSERT_JOB, updated)
        if report.groups:
            self.store.dispatch(ActionType.SET_DUPLICATE_GROUPS, report.groups)

        if updated.is_terminal:
            await self._on_terminal(updated, report)
        return updated

    async def _on_terminal(self, job: MergeJob, report: JobStatusReport) -> None:
        object_type = self._object_types.pop(job.id, None)
        if object_type is None and report.merges:
            object_type = report.merges[0].object_type

        self.store.invalidate("jobs")
        self.audit.record_job(job, object_type)

        if job.records_processed == 0:
            logger.info(f"Job {job.id} finished without processing any records")

        if job.status == JobStatus.FAILED:
            self.store.report_error(self.SOURCE, f"job {job.id}", RemoteExecutionError(
                f"Job {job.id} failed", details="\n".join(job.error_messages) or None
            ))
        elif job.error_messages:
            self.store.report_error(self.SOURCE, f"job {job.id}", PartialResultError(
                f"Job {job.id} completed with {len(job.error_messages)} record error(s)",
                errors=list(job.error_messages),
            ))

        if not job.is_dry_run:
            for merge in report.merges:
                log = self.audit.log_merge(MergeLog(
                    master_id=merge.master_id,
                    merged_ids=tuple(merge.merged_ids),
                    object_type=merge.object_type,
                    initiator=self.initiator,
                    job_id=job.id,
                    config_id=job.config_id,
                ))
                self.store.dispatch(ActionType.ADD_MERGE_RESULT, log)

        if self.statistics is not None:
            time_range = self.store.get_state().statistics.time_range
            try:
                stats = await self.statistics.get_statistics(time_range)
            except Exception as e:
                self.store.report_error(self.SOURCE, "get_statistics", e)
            else:
                self.store.dispatch(ActionType.UPDATE_STATISTICS, stats)

        self._publish(JobCompleted(
            job.id, job.status.value, job.records_processed,
            job.duplicates_found, job.records_merged,
        ))
        logger.info(
            f"Job {job.id} {job.status.value}: {job.records_processed} processed, "
            f"{job.duplicates_found} duplicates, {job.records_merged} merged"
        )

"""
Recurring job schedules.

The simple path schedules a job "daily at hour H"; the hour is checked
before the scheduler is ever called. Each recurrence spawns a new Queued
job that the orchestrator then observes like any other.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, List, Optional

from ..backends.interfaces import JobScheduler
from ..core.errors import RemoteExecutionError, ValidationError
from ..core.models import JobStatus, MergeJob, ScheduledJob
from ..messaging.bus import MessageBus
from ..messaging.messages import JobScheduled
from ..state.actions import ActionType
from ..state.store import SessionStore
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


def daily_cron(hour: Any) -> str:
    """Cron expression running every day at the given hour.

    Raises:
        ValidationError: If hour is not an integer in [0, 23]
    """
    if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
        raise ValidationError(
            f"Hour must be an integer between 0 and 23, got {hour!r}",
            missing_fields=['hour']
        )
    return f"0 0 {hour} * * ?"


def validate_cron(expression: str) -> str:
    """Check that an expression has the 6 or 7 fields of the scheduler's syntax."""
    fields = (expression or "").split()
    if len(fields) not in (6, 7):
        raise ValidationError(
            f"Cron expression needs 6 or 7 fields, got {len(fields)}",
            missing_fields=['cron_expression']
        )
    return " ".join(fields)


def compute_next_fire(cron_expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next run of a fixed-time daily expression.

    Only expressions with numeric second, minute and hour and wildcard
    date fields are understood; anything else returns None.
    """
    fields = cron_expression.split()
    if len(fields) not in (6, 7):
        return None
    if not all(f.isdigit() for f in fields[:3]) or any(f not in ("*", "?") for f in fields[3:]):
        return None

    second, minute, hour = (int(f) for f in fields[:3])
    if second > 59 or minute > 59 or hour > 23:
        return None

    now = now or datetime.now()
    candidate = now.replace(hour=hour, minute=minute, second=second, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class ScheduleManager:
    """Creates, lists and deletes recurring job schedules."""

    SOURCE = "schedule-manager"

    def __init__(
        self,
        store: SessionStore,
        scheduler: JobScheduler,
        orchestrator: Optional[JobOrchestrator] = None,
        bus: Optional[MessageBus] = None
    ):
        self.store = store
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.bus = bus

    async def schedule_daily(
        self,
        config_id: str,
        hour: Any,
        job_name: str,
        is_dry_run: bool = True,
        batch_size: Optional[int] = None
    ) -> ScheduledJob:
        """Schedule a job every day at hour H.

        Raises:
            ValidationError: If the hour or required values are invalid
        """
        return await self.schedule(config_id, daily_cron(hour), job_name, is_dry_run, batch_size)

    async def schedule(
        self,
        config_id: str,
        cron_expression: str,
        job_name: str,
        is_dry_run: bool = True,
        batch_size: Optional[int] = None
    ) -> ScheduledJob:
        """Schedule a job with a full cron expression.

        Raises:
            ValidationError: If a required value is missing (no call is made)
            RemoteExecutionError: If the scheduler call failed
        """
        if batch_size is None:
            batch_size = self.store.config.default_batch_size
        missing = []
        if not config_id:
            missing.append('config_id')
        if not job_name or not job_name.strip():
            missing.append('job_name')
        if not 1 <= batch_size <= self.store.config.max_batch_size:
            missing.append('batch_size')
        if missing:
            raise ValidationError(
                f"Cannot schedule job, missing: {', '.join(missing)}", missing_fields=missing
            )
        cron_expression = validate_cron(cron_expression)

        try:
            schedule_id = await self.scheduler.schedule_job(
                config_id, cron_expression, job_name.strip(), is_dry_run, batch_size
            )
        except Exception as e:
            record = self.store.report_error(self.SOURCE, "schedule_job", e)
            raise RemoteExecutionError(f"Scheduling failed: {record.message}") from e

        scheduled = ScheduledJob(
            id=schedule_id,
            config_id=config_id,
            cron_expression=cron_expression,
            job_name=job_name.strip(),
            is_dry_run=is_dry_run,
            batch_size=batch_size,
            next_fire_time=compute_next_fire(cron_expression),
        )
        jobs = self.store.get_state().jobs
        self.store.dispatch(ActionType.UPDATE_SCHEDULED_JOBS, (*jobs.scheduled, scheduled))
        if self.bus is not None:
            self.bus.publish(JobScheduled(schedule_id, config_id, cron_expression), source=self.SOURCE)

        logger.info(f"Scheduled '{scheduled.job_name}' ({cron_expression}) for {config_id}")
        return scheduled

    async def delete_schedule(self, schedule_id: str) -> None:
        """Delete a schedule; jobs it already spawned are left alone."""
        try:
            await self.scheduler.delete_scheduled_job(schedule_id)
        except Exception as e:
            record = self.store.report_error(self.SOURCE, "delete_scheduled_job", e)
            raise RemoteExecutionError(f"Deleting schedule failed: {record.message}") from e

        remaining = tuple(s for s in self.store.get_state().jobs.scheduled if s.id != schedule_id)
        self.store.dispatch(ActionType.UPDATE_SCHEDULED_JOBS, remaining)

    async def refresh_schedules(self, force: bool = False) -> List[ScheduledJob]:
        """Reload schedules from the scheduler unless the jobs cache is fresh."""
        if not force and self.store.is_cache_valid("jobs"):
            return list(self.store.get_state().jobs.scheduled)

        self.store.dispatch(ActionType.SET_CACHE_PENDING, {'section': 'jobs', 'pending': True})
        try:
            schedules = await self.scheduler.list_scheduled_jobs()
        except Exception as e:
            self.store.dispatch(ActionType.SET_CACHE_PENDING, {'section': 'jobs', 'pending': False})
            record = self.store.report_error(self.SOURCE, "list_scheduled_jobs", e)
            raise RemoteExecutionError(f"Loading schedules failed: {record.message}") from e

        # Keep spawned job ids known locally
        known = {s.id: s for s in self.store.get_state().jobs.scheduled}
        merged = [
            replace(
                s,
                spawned_job_ids=known[s.id].spawned_job_ids if s.id in known else s.spawned_job_ids,
                next_fire_time=s.next_fire_time or compute_next_fire(s.cron_expression),
            )
            for s in schedules
        ]
        self.store.dispatch(ActionType.UPDATE_SCHEDULED_JOBS, tuple(merged))
        return merged

    def register_spawned_job(self, schedule_id: str, job_id: str) -> MergeJob:
        """Record a Queued job started by one recurrence of a schedule.

        Raises:
            KeyError: If the schedule is unknown to the session
        """
        schedules = self.store.get_state().jobs.scheduled
        schedule = next((s for s in schedules if s.id == schedule_id), None)
        if schedule is None:
            raise KeyError(f"Unknown schedule: {schedule_id}")

        job = MergeJob(
            id=job_id,
            config_id=schedule.config_id,
            is_dry_run=schedule.is_dry_run,
            batch_size=schedule.batch_size,
            status=JobStatus.QUEUED,
            schedule_id=schedule_id,
            submitted_at=datetime.now(),
        )
        updated = replace(
            schedule,
            spawned_job_ids=(*schedule.spawned_job_ids, job_id),
            next_fire_time=compute_next_fire(schedule.cron_expression),
        )
        self.store.dispatch(
            ActionType.UPDATE_SCHEDULED_JOBS,
            tuple(updated if s.id == schedule_id else s for s in schedules),
        )
        if self.orchestrator is not None:
            configuration = next(
                (c for c in self.store.get_state().configurations.items if c.id == schedule.config_id),
                None,
            )
            self.orchestrator.track_job(job, configuration.object_type if configuration else None)
        else:
            self.store.dispatch(ActionType.UPSERT_JOB, job)
        return job

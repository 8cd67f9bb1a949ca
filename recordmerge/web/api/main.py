"""FastAPI application for RecordMerge sessions."""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import List, Dict, Optional, Any
from datetime import datetime
import logging
import os

from ...core.errors import (
    AccessError,
    ConfigurationError,
    RecordMergeError,
    RemoteExecutionError,
    ValidationError,
)
from ...core.models import DuplicateGroup
from ...merge.conflict_resolver import MergePreview
from ...merge.merger import MergeResult
from ...session import MergeSession
from ...state.actions import ActionType
from ...state.state import Statistics
from ...utils.config import EngineConfig

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    ConfigurationError: 404,
    AccessError: 403,
    RemoteExecutionError: 502,
}


# Pydantic models for API
class DraftRequest(BaseModel):
    config_id: str
    object_type: Optional[str] = None
    batch_size: Optional[int] = None
    match_fields: Optional[List[str]] = None


class SubmitJobRequest(BaseModel):
    is_dry_run: bool = True
    batch_size: Optional[int] = None


class GroupUpdateRequest(BaseModel):
    master_id: Optional[str] = None
    excluded: Optional[bool] = None
    flagged: Optional[bool] = None
    expanded: Optional[bool] = None


class PreviewRequest(BaseModel):
    fields: Optional[List[str]] = None
    master_id: Optional[str] = None
    selections: Dict[str, Any] = {}


class BulkMergeRequest(BaseModel):
    group_ids: Optional[List[str]] = None


class ScheduleRequest(BaseModel):
    config_id: str
    job_name: str
    hour: Optional[int] = None
    cron_expression: Optional[str] = None
    is_dry_run: bool = True
    batch_size: Optional[int] = None


# Response helpers
def group_to_dict(group: DuplicateGroup, session: MergeSession) -> Dict[str, Any]:
    groups = session.store.get_state().groups
    return {
        'id': group.id,
        'object_type': group.object_type,
        'member_record_ids': group.sorted_members(),
        'match_score': group.match_score,
        'master_record_id': group.master_record_id,
        'excluded': group.excluded,
        'flagged': group.flagged,
        'expanded': group.expanded,
        'processing': group.id in groups.processing,
        'merged': group.id in groups.merged,
        'failed': group.id in groups.failed,
    }


def preview_to_dict(preview: MergePreview) -> Dict[str, Any]:
    return {
        'group_id': preview.group.id,
        'master_id': preview.master_id,
        'duplicate_ids': preview.group.duplicate_ids(),
        'has_conflicts': preview.has_conflicts,
        'resolutions': [r.to_dict() for r in preview.resolutions],
        'merged_values': preview.merged_values(),
        'note': preview.conflict_summary(),
    }


def result_to_dict(result: MergeResult) -> Dict[str, Any]:
    return {
        'success': result.success,
        'merged_id': result.merged_id,
        'merged_ids': list(result.merged_ids),
        'errors': list(result.errors),
        'correlation_id': result.correlation_id,
        'log': result.log.to_dict() if result.log else None,
    }


def statistics_to_dict(statistics: Statistics) -> Dict[str, Any]:
    return {
        'time_range': statistics.time_range,
        'duplicates_found': statistics.duplicates_found,
        'records_merged': statistics.records_merged,
        'duplicates_trend': [{'date': d, 'count': c} for d, c in statistics.duplicates_trend],
        'merges_trend': [{'date': d, 'count': c} for d, c in statistics.merges_trend],
        'by_object': {
            name: {'total_duplicates': s.total_duplicates, 'total_merged': s.total_merged}
            for name, s in statistics.by_object.items()
        },
        'recent_merges': list(statistics.recent_merges),
    }


def create_app(session: MergeSession) -> FastAPI:
    """Build the API around one session.

    Args:
        session: Session whose store backs every endpoint

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="RecordMerge API",
        description="Duplicate group preview, merge execution and job orchestration",
        version="0.1.0",
    )
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RecordMergeError)
    async def record_merge_error_handler(request: Request, exc: RecordMergeError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        content = {'detail': exc.message, 'category': exc.category.value}
        if isinstance(exc, ValidationError):
            content['missing_fields'] = list(exc.missing_fields)
        logger.warning(f"{request.method} {request.url.path} -> {status}: {exc.message}")
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(KeyError)
    async def key_error_handler(request: Request, exc: KeyError):
        return JSONResponse(status_code=404, content={'detail': str(exc.args[0]) if exc.args else "Not found"})

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    # Configurations

    @app.get("/api/configurations")
    async def list_configurations(force: bool = False):
        """List active matching configurations."""
        configurations = await session.load_configurations(force=force)
        state = session.store.get_state().configurations
        return {
            'configurations': [c.to_dict() for c in configurations],
            'selected': state.selected.id if state.selected else None,
            'recent': [c.id for c in state.recent],
        }

    @app.post("/api/configurations/{config_id}/select")
    async def select_configuration(config_id: str):
        configuration = session.select_configuration(config_id)
        return configuration.to_dict()

    # Draft job

    @app.get("/api/draft")
    async def get_draft():
        draft = session.store.get_state().draft_job or session.jobs.load_draft()
        return {'draft': draft.to_dict() if draft else None}

    @app.post("/api/draft")
    async def save_draft(request: DraftRequest):
        draft = session.jobs.save_draft(
            request.config_id,
            object_type=request.object_type,
            batch_size=request.batch_size,
            match_fields=request.match_fields,
        )
        return {'draft': draft.to_dict()}

    @app.delete("/api/draft")
    async def discard_draft():
        session.jobs.discard_draft()
        return {'draft': None}

    # Jobs

    @app.post("/api/jobs")
    async def submit_job(request: SubmitJobRequest):
        """Submit the draft as a dry-run or merge job."""
        job = await session.jobs.submit(request.is_dry_run, request.batch_size)
        return job.to_dict()

    @app.get("/api/jobs")
    async def list_jobs():
        jobs = session.store.get_state().jobs
        return {
            'active': [j.to_dict() for j in jobs.active],
            'scheduled': [s.to_dict() for s in jobs.scheduled],
        }

    @app.post("/api/jobs/refresh")
    async def refresh_jobs():
        jobs = await session.jobs.refresh_active_jobs()
        return {'active': [j.to_dict() for j in jobs]}

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, refresh: bool = False):
        if refresh:
            job = await session.jobs.refresh_job(job_id)
        else:
            job = session.store.get_state().jobs.get_active(job_id)
            if job is None:
                raise HTTPException(status_code=404, detail=f"Job {job_id} is not tracked")
        return job.to_dict()

    # Duplicate groups

    @app.get("/api/groups")
    async def list_groups():
        return {'groups': [group_to_dict(g, session) for g in session.store.get_state().groups.items]}

    @app.patch("/api/groups/{group_id}")
    async def update_group(group_id: str, request: GroupUpdateRequest):
        group = session.update_group(
            group_id,
            master_id=request.master_id,
            excluded=request.excluded,
            flagged=request.flagged,
            expanded=request.expanded,
        )
        return group_to_dict(group, session)

    @app.post("/api/groups/{group_id}/preview")
    async def preview_group(group_id: str, request: PreviewRequest):
        """Compute field resolutions for a group."""
        preview = await session.preview_group(
            group_id, request.fields, request.master_id, request.selections
        )
        return preview_to_dict(preview)

    @app.post("/api/groups/{group_id}/merge")
    async def merge_group(group_id: str, request: PreviewRequest):
        """Merge one group with the given selections applied."""
        preview = await session.preview_group(
            group_id, request.fields, request.master_id, request.selections
        )
        result = await session.merge_group(group_id, preview)
        return result_to_dict(result)

    @app.post("/api/groups/merge")
    async def bulk_merge(request: BulkMergeRequest):
        """Merge groups one after another."""
        result = await session.merge_groups(request.group_ids)
        return {
            'results': {gid: result_to_dict(r) for gid, r in result.results.items()},
            'succeeded': result.succeeded,
            'failed': result.failed,
            'skipped': result.skipped,
        }

    # Schedules

    @app.post("/api/schedules")
    async def create_schedule(request: ScheduleRequest):
        if request.cron_expression:
            scheduled = await session.schedules.schedule(
                request.config_id, request.cron_expression, request.job_name,
                request.is_dry_run, request.batch_size,
            )
        else:
            scheduled = await session.schedules.schedule_daily(
                request.config_id, request.hour, request.job_name,
                request.is_dry_run, request.batch_size,
            )
        return scheduled.to_dict()

    @app.get("/api/schedules")
    async def list_schedules(force: bool = False):
        schedules = await session.schedules.refresh_schedules(force=force)
        return {'schedules': [s.to_dict() for s in schedules]}

    @app.delete("/api/schedules/{schedule_id}")
    async def delete_schedule(schedule_id: str):
        await session.schedules.delete_schedule(schedule_id)
        return {'deleted': schedule_id}

    # Audit and statistics

    @app.get("/api/merge-logs")
    async def list_merge_logs(
        object_type: Optional[str] = None,
        config_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        date_range: str = "ALL"
    ):
        result = session.list_merge_logs(
            object_type=object_type,
            config_id=config_id,
            page_size=page_size,
            page_number=page,
            date_range=date_range,
        )
        return result.to_dict()

    @app.get("/api/statistics")
    async def get_statistics(time_range: str = "ALL", force: bool = False):
        statistics = await session.refresh_statistics(time_range, force=force)
        return statistics_to_dict(statistics)

    @app.get("/api/errors")
    async def list_errors():
        return {'errors': [e.to_dict() for e in session.store.get_state().errors]}

    @app.delete("/api/errors")
    async def clear_errors(error_id: Optional[str] = None):
        session.store.dispatch(ActionType.CLEAR_ERRORS, error_id)
        return {'errors': [e.to_dict() for e in session.store.get_state().errors]}

    return app


def main():
    """Serve a local session over the configuration and record files in the environment."""
    import uvicorn

    config = EngineConfig(data_dir=os.environ.get("RECORDMERGE_DATA_DIR", ".recordmerge"))
    session = MergeSession.local(
        os.environ.get("RECORDMERGE_CONFIGS", "configurations.json"),
        os.environ.get("RECORDMERGE_RECORDS", "records.json"),
        config=config,
    )
    try:
        uvicorn.run(create_app(session), host="0.0.0.0", port=int(os.environ.get("RECORDMERGE_PORT", "8000")))
    finally:
        session.close()


if __name__ == "__main__":
    main()

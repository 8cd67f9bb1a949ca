"""
State transitions for SessionStore.

`reduce` is the only place a StoreState is turned into a new one. Each
action produces exactly one new state; cache stamping for actions that
replace cached data is applied afterwards by `stamp_cache`.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Sequence

from ..core.errors import ErrorRecord
from ..core.models import DraftJob, DuplicateGroup, MatchConfiguration, MergeJob, MergeLog
from ..utils.config import EngineConfig
from .actions import ACTION_CACHE_WRITES, ActionType
from .state import ObjectStatistics, Pagination, Statistics, StoreState, initial_state

Reducer = Callable[[StoreState, Any, EngineConfig], StoreState]


def _set_configurations(state: StoreState, payload: Sequence[MatchConfiguration], config):
    configurations = replace(state.configurations, items=tuple(payload or ()))
    return replace(state, configurations=configurations)


def _add_recent(recent, configuration: MatchConfiguration, limit: int):
    if any(c.id == configuration.id for c in recent):
        return recent
    return (configuration, *recent)[:limit]


def _select_configuration(state: StoreState, payload: Optional[MatchConfiguration], config):
    recent = state.configurations.recent
    if payload is not None:
        recent = _add_recent(recent, payload, config.max_recent_configurations)
    configurations = replace(state.configurations, selected=payload, recent=recent)
    return replace(state, configurations=configurations)


def _add_recent_configuration(state: StoreState, payload: MatchConfiguration, config):
    recent = _add_recent(state.configurations.recent, payload, config.max_recent_configurations)
    return replace(state, configurations=replace(state.configurations, recent=recent))


def _clear_recent_configurations(state: StoreState, payload, config):
    return replace(state, configurations=replace(state.configurations, recent=()))


def _update_scheduled_jobs(state: StoreState, payload, config):
    return replace(state, jobs=replace(state.jobs, scheduled=tuple(payload or ())))


def _update_active_jobs(state: StoreState, payload, config):
    return replace(state, jobs=replace(state.jobs, active=tuple(payload or ())))


def _upsert_job(state: StoreState, payload: MergeJob, config):
    active = list(state.jobs.active)
    for i, job in enumerate(active):
        if job.id == payload.id:
            active[i] = payload
            break
    else:
        active.append(payload)
    return replace(state, jobs=replace(state.jobs, active=tuple(active)))


def _set_duplicate_groups(state: StoreState, payload: Sequence[DuplicateGroup], config):
    groups = replace(
        state.groups,
        items=tuple(payload or ()),
        processing=frozenset(),
        merged=frozenset(),
        failed={},
    )
    return replace(state, groups=groups)


def _update_group(state: StoreState, payload: DuplicateGroup, config):
    items = tuple(payload if g.id == payload.id else g for g in state.groups.items)
    return replace(state, groups=replace(state.groups, items=items))


def _set_group_processing(state: StoreState, payload: Dict[str, Any], config):
    group_id = payload['group_id']
    processing = set(state.groups.processing)
    if payload.get('processing', True):
        processing.add(group_id)
    else:
        processing.discard(group_id)
    return replace(state, groups=replace(state.groups, processing=frozenset(processing)))


def _set_group_result(state: StoreState, payload: Dict[str, Any], config):
    group_id = payload['group_id']
    merged = set(state.groups.merged)
    failed = dict(state.groups.failed)
    if payload.get('success'):
        merged.add(group_id)
        failed.pop(group_id, None)
    else:
        failed[group_id] = payload.get('error') or "Merge failed"
    groups = replace(
        state.groups,
        processing=state.groups.processing - {group_id},
        merged=frozenset(merged),
        failed=failed,
    )
    return replace(state, groups=groups)


def _set_draft(state: StoreState, payload: Optional[DraftJob], config):
    return replace(state, draft_job=payload)


def _clear_draft(state: StoreState, payload, config):
    return replace(state, draft_job=None)


def _set_loading(state: StoreState, payload, config):
    return replace(state, is_loading=bool(payload))


def _set_cache_pending(state: StoreState, payload: Dict[str, Any], config):
    section = state.cache_section(payload['section'])
    return state.with_cache(replace(section, pending=bool(payload.get('pending', True))))


def _invalidate_cache(state: StoreState, payload: Optional[str], config):
    if payload:
        return state.with_cache(state.cache_section(payload).invalidated())
    cache = {name: section.invalidated() for name, section in state.cache.items()}
    return replace(state, cache=cache)


def _update_pagination(state: StoreState, payload: Dict[str, Any], config):
    current = state.pagination
    pagination = Pagination(
        page_size=payload.get('page_size', current.page_size),
        current_page=payload.get('current_page', current.current_page),
        total_records=payload.get('total_records', current.total_records),
        total_pages=payload.get('total_pages', current.total_pages),
    )
    return replace(state, pagination=pagination)


def _add_error(state: StoreState, payload: ErrorRecord, config):
    errors = (*state.errors, payload)[-config.max_errors:]
    return replace(state, errors=errors)


def _clear_errors(state: StoreState, payload: Optional[str], config):
    # A payload dismisses one error by id
    if payload:
        return replace(state, errors=tuple(e for e in state.errors if e.id != payload))
    return replace(state, errors=())


def _update_statistics(state: StoreState, payload: Statistics, config):
    # Locally recorded merges survive a refresh from the provider
    statistics = replace(payload, recent_merges=state.statistics.recent_merges)
    return replace(state, statistics=statistics)


def _add_merge_result(state: StoreState, payload: MergeLog, config):
    current = state.statistics
    count = payload.records_merged

    by_object = dict(current.by_object)
    previous = by_object.get(payload.object_type, ObjectStatistics())
    by_object[payload.object_type] = replace(previous, total_merged=previous.total_merged + count)

    entry = payload.to_dict()
    recent = (entry, *current.recent_merges)[:config.max_recent_merges]

    statistics = replace(
        current,
        records_merged=current.records_merged + count,
        by_object=by_object,
        recent_merges=recent,
    )
    return replace(state, statistics=statistics)


def _reset_state(state: StoreState, payload, config):
    return initial_state(config)


REDUCERS: Dict[ActionType, Reducer] = {
    ActionType.SET_CONFIGURATIONS: _set_configurations,
    ActionType.SELECT_CONFIGURATION: _select_configuration,
    ActionType.ADD_RECENT_CONFIGURATION: _add_recent_configuration,
    ActionType.CLEAR_RECENT_CONFIGURATIONS: _clear_recent_configurations,
    ActionType.UPDATE_SCHEDULED_JOBS: _update_scheduled_jobs,
    ActionType.UPDATE_ACTIVE_JOBS: _update_active_jobs,
    ActionType.UPSERT_JOB: _upsert_job,
    ActionType.SET_DUPLICATE_GROUPS: _set_duplicate_groups,
    ActionType.UPDATE_GROUP: _update_group,
    ActionType.SET_GROUP_PROCESSING: _set_group_processing,
    ActionType.SET_GROUP_RESULT: _set_group_result,
    ActionType.SAVE_DRAFT_JOB: _set_draft,
    ActionType.LOAD_DRAFT_JOB: _set_draft,
    ActionType.CLEAR_DRAFT_JOB: _clear_draft,
    ActionType.SET_LOADING: _set_loading,
    ActionType.SET_CACHE_PENDING: _set_cache_pending,
    ActionType.INVALIDATE_CACHE: _invalidate_cache,
    ActionType.UPDATE_PAGINATION: _update_pagination,
    ActionType.ADD_ERROR: _add_error,
    ActionType.CLEAR_ERRORS: _clear_errors,
    ActionType.UPDATE_STATISTICS: _update_statistics,
    ActionType.ADD_MERGE_RESULT: _add_merge_result,
    ActionType.RESET_STATE: _reset_state,
}


def reduce(state: StoreState, action: ActionType, payload: Any, config: EngineConfig) -> StoreState:
    """Apply one action to a state."""
    return REDUCERS[action](state, payload, config)


def stamp_cache(state: StoreState, action: ActionType, now: float) -> StoreState:
    """Mark the cache sections an action refreshed as valid from `now`."""
    for name in ACTION_CACHE_WRITES.get(action, ()):
        state = state.with_cache(state.cache_section(name).stamped(now))
    return state

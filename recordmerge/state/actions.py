"""Store actions and the sections each one touches."""

from enum import Enum
from typing import Dict, Optional, Tuple


class ActionType(Enum):
    """Actions accepted by SessionStore.dispatch."""
    SET_CONFIGURATIONS = "SET_CONFIGURATIONS"
    SELECT_CONFIGURATION = "SELECT_CONFIGURATION"
    ADD_RECENT_CONFIGURATION = "ADD_RECENT_CONFIGURATION"
    CLEAR_RECENT_CONFIGURATIONS = "CLEAR_RECENT_CONFIGURATIONS"
    UPDATE_SCHEDULED_JOBS = "UPDATE_SCHEDULED_JOBS"
    UPDATE_ACTIVE_JOBS = "UPDATE_ACTIVE_JOBS"
    UPSERT_JOB = "UPSERT_JOB"
    SET_DUPLICATE_GROUPS = "SET_DUPLICATE_GROUPS"
    UPDATE_GROUP = "UPDATE_GROUP"
    SET_GROUP_PROCESSING = "SET_GROUP_PROCESSING"
    SET_GROUP_RESULT = "SET_GROUP_RESULT"
    SAVE_DRAFT_JOB = "SAVE_DRAFT_JOB"
    LOAD_DRAFT_JOB = "LOAD_DRAFT_JOB"
    CLEAR_DRAFT_JOB = "CLEAR_DRAFT_JOB"
    SET_LOADING = "SET_LOADING"
    SET_CACHE_PENDING = "SET_CACHE_PENDING"
    INVALIDATE_CACHE = "INVALIDATE_CACHE"
    UPDATE_PAGINATION = "UPDATE_PAGINATION"
    ADD_ERROR = "ADD_ERROR"
    CLEAR_ERRORS = "CLEAR_ERRORS"
    UPDATE_STATISTICS = "UPDATE_STATISTICS"
    ADD_MERGE_RESULT = "ADD_MERGE_RESULT"
    RESET_STATE = "RESET_STATE"


# State section each action writes; None means the whole state
ACTION_SECTIONS: Dict[ActionType, Optional[str]] = {
    ActionType.SET_CONFIGURATIONS: "configurations",
    ActionType.SELECT_CONFIGURATION: "configurations",
    ActionType.ADD_RECENT_CONFIGURATION: "configurations",
    ActionType.CLEAR_RECENT_CONFIGURATIONS: "configurations",
    ActionType.UPDATE_SCHEDULED_JOBS: "jobs",
    ActionType.UPDATE_ACTIVE_JOBS: "jobs",
    ActionType.UPSERT_JOB: "jobs",
    ActionType.SET_DUPLICATE_GROUPS: "groups",
    ActionType.UPDATE_GROUP: "groups",
    ActionType.SET_GROUP_PROCESSING: "groups",
    ActionType.SET_GROUP_RESULT: "groups",
    ActionType.SAVE_DRAFT_JOB: "draft_job",
    ActionType.LOAD_DRAFT_JOB: "draft_job",
    ActionType.CLEAR_DRAFT_JOB: "draft_job",
    ActionType.SET_LOADING: "is_loading",
    ActionType.SET_CACHE_PENDING: "cache",
    ActionType.INVALIDATE_CACHE: "cache",
    ActionType.UPDATE_PAGINATION: "pagination",
    ActionType.ADD_ERROR: "errors",
    ActionType.CLEAR_ERRORS: "errors",
    ActionType.UPDATE_STATISTICS: "statistics",
    ActionType.ADD_MERGE_RESULT: "statistics",
    ActionType.RESET_STATE: None,
}

# Cache sections whose data an action replaces; they are stamped fresh
ACTION_CACHE_WRITES: Dict[ActionType, Tuple[str, ...]] = {
    ActionType.SET_CONFIGURATIONS: ("configurations",),
    ActionType.UPDATE_SCHEDULED_JOBS: ("jobs",),
    ActionType.UPDATE_ACTIVE_JOBS: ("jobs",),
    ActionType.SET_DUPLICATE_GROUPS: ("groups",),
    ActionType.UPDATE_STATISTICS: ("statistics",),
}


def section_for(action: ActionType) -> Optional[str]:
    """State section written by an action (None for the whole state)."""
    return ACTION_SECTIONS[action]

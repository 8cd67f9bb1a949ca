"""
Session state: immutable state values, the single-writer store,
throttled notification and draft persistence.
"""

from .actions import ActionType, ACTION_SECTIONS, section_for
from .state import (
    StoreState,
    CacheSection,
    ConfigurationsState,
    JobsState,
    GroupsState,
    Statistics,
    ObjectStatistics,
    Pagination,
    CACHE_SECTIONS,
    initial_state,
)
from .throttle import Scheduler, AsyncioScheduler, ManualScheduler, TrailingThrottle
from .drafts import DraftStorage, JsonFileDraftStorage, MemoryDraftStorage
from .store import SessionStore

__all__ = [
    'ActionType',
    'ACTION_SECTIONS',
    'section_for',
    'StoreState',
    'CacheSection',
    'ConfigurationsState',
    'JobsState',
    'GroupsState',
    'Statistics',
    'ObjectStatistics',
    'Pagination',
    'CACHE_SECTIONS',
    'initial_state',
    'Scheduler',
    'AsyncioScheduler',
    'ManualScheduler',
    'TrailingThrottle',
    'DraftStorage',
    'JsonFileDraftStorage',
    'MemoryDraftStorage',
    'SessionStore',
]

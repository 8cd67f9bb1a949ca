"""
Immutable session state.

StoreState is the aggregate root owned by a SessionStore. Each top-level
field is a section that listeners can subscribe to; cache bookkeeping
for the data-bearing sections lives in `cache`.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..core.errors import ErrorRecord
from ..core.models import DraftJob, DuplicateGroup, MatchConfiguration, MergeJob, ScheduledJob
from ..utils.config import EngineConfig

CACHE_SECTIONS = ("configurations", "jobs", "statistics", "groups")


@dataclass(frozen=True)
class CacheSection:
    """Freshness bookkeeping for one cached data domain."""
    name: str
    timestamp: Optional[float] = None
    pending: bool = False
    hit_count: int = 0
    miss_count: int = 0

    @property
    def observations(self) -> int:
        return self.hit_count + self.miss_count

    @property
    def hit_ratio(self) -> float:
        if not self.observations:
            return 0.0
        return self.hit_count / self.observations

    def timeout(self, config: EngineConfig) -> float:
        """Effective timeout, scaled by the observed hit ratio.

        Until enough lookups have been observed the base timeout applies.
        Afterwards it is scaled linearly from adaptive_min_scale (no hits)
        to adaptive_max_scale (all hits).
        """
        base = config.base_timeout(self.name)
        if self.observations < config.adaptive_min_observations:
            return base
        span = config.adaptive_max_scale - config.adaptive_min_scale
        return base * (config.adaptive_min_scale + span * self.hit_ratio)

    def is_valid(self, now: float, config: EngineConfig) -> bool:
        if self.timestamp is None:
            return False
        return (now - self.timestamp) < self.timeout(config)

    def stamped(self, now: float) -> 'CacheSection':
        return replace(self, timestamp=now, pending=False)

    def invalidated(self) -> 'CacheSection':
        return replace(self, timestamp=None, pending=False)

    def observed(self, hit: bool) -> 'CacheSection':
        if hit:
            return replace(self, hit_count=self.hit_count + 1)
        return replace(self, miss_count=self.miss_count + 1)


@dataclass(frozen=True)
class ConfigurationsState:
    items: Tuple[MatchConfiguration, ...] = ()
    selected: Optional[MatchConfiguration] = None
    recent: Tuple[MatchConfiguration, ...] = ()


@dataclass(frozen=True)
class JobsState:
    scheduled: Tuple[ScheduledJob, ...] = ()
    active: Tuple[MergeJob, ...] = ()

    def get_active(self, job_id: str) -> Optional[MergeJob]:
        for job in self.active:
            if job.id == job_id:
                return job
        return None


@dataclass(frozen=True)
class GroupsState:
    """Duplicate groups of the current job run and their merge progress."""
    items: Tuple[DuplicateGroup, ...] = ()
    processing: FrozenSet[str] = frozenset()
    merged: FrozenSet[str] = frozenset()
    failed: Mapping[str, str] = field(default_factory=dict)

    def get(self, group_id: str) -> Optional[DuplicateGroup]:
        for group in self.items:
            if group.id == group_id:
                return group
        return None


@dataclass(frozen=True)
class ObjectStatistics:
    total_duplicates: int = 0
    total_merged: int = 0


@dataclass(frozen=True)
class Statistics:
    """Aggregate duplicate/merge counts for the selected time range."""
    time_range: str = "ALL"
    duplicates_found: int = 0
    records_merged: int = 0
    duplicates_trend: Tuple[Tuple[str, int], ...] = ()
    merges_trend: Tuple[Tuple[str, int], ...] = ()
    by_object: Mapping[str, ObjectStatistics] = field(default_factory=dict)
    recent_merges: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class Pagination:
    page_size: int = 10
    current_page: int = 1
    total_records: int = 0
    total_pages: int = 0


@dataclass(frozen=True)
class StoreState:
    """Aggregate root of a session."""
    configurations: ConfigurationsState = field(default_factory=ConfigurationsState)
    jobs: JobsState = field(default_factory=JobsState)
    groups: GroupsState = field(default_factory=GroupsState)
    statistics: Statistics = field(default_factory=Statistics)
    errors: Tuple[ErrorRecord, ...] = ()
    pagination: Pagination = field(default_factory=Pagination)
    draft_job: Optional[DraftJob] = None
    is_loading: bool = False
    cache: Mapping[str, CacheSection] = field(
        default_factory=lambda: {name: CacheSection(name) for name in CACHE_SECTIONS}
    )

    # Shortcuts to the aggregate's well-known values

    @property
    def selected_configuration(self) -> Optional[MatchConfiguration]:
        return self.configurations.selected

    @property
    def scheduled_jobs(self) -> Tuple[ScheduledJob, ...]:
        return self.jobs.scheduled

    @property
    def active_jobs(self) -> Tuple[MergeJob, ...]:
        return self.jobs.active

    def cache_section(self, name: str) -> CacheSection:
        return self.cache.get(name) or CacheSection(name)

    def with_cache(self, section: CacheSection) -> 'StoreState':
        cache = dict(self.cache)
        cache[section.name] = section
        return replace(self, cache=cache)


def initial_state(config: Optional[EngineConfig] = None) -> StoreState:
    """Safe default state for a new or reset session."""
    config = config or EngineConfig()
    return StoreState(pagination=Pagination(page_size=config.page_size))

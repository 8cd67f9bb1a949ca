"""
Per-session wiring of the merge engine.

A MergeSession owns one SessionStore and the services that write to it.
It is created explicitly and passed to whatever needs it (CLI command,
web app); there is no module-level session.
"""

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .backends.interfaces import BatchExecutor, JobScheduler, RecordStore
from .backends.local import LocalBatchExecutor, LocalRecordStore, LocalScheduler
from .core.errors import AccessError, ConfigurationError, RemoteExecutionError, ValidationError
from .core.models import DuplicateGroup, MatchConfiguration
from .data.configuration_loader import ConfigurationResolver
from .jobs.orchestrator import JobOrchestrator
from .jobs.schedule import ScheduleManager
from .matching.grouper import DuplicateGrouper
from .merge.bulk import BulkMergeCoordinator, BulkMergeResult
from .merge.conflict_resolver import MergePreview, default_fields
from .merge.master_selector import select_master, set_master
from .merge.merger import MergeExecutor, MergeResult
from .messaging.bus import MessageBus
from .state.actions import ActionType
from .state.drafts import DraftStorage, JsonFileDraftStorage
from .state.state import Statistics
from .state.store import SessionStore
from .state.throttle import Scheduler
from .utils.audit_trail import DateRange, MergeAuditTrail, MergeLogPage
from .utils.config import EngineConfig
from .utils.statistics import AuditStatistics

logger = logging.getLogger(__name__)


class MergeSession:
    """One operator session over the merge engine."""

    SOURCE = "merge-session"

    def __init__(
        self,
        resolver: ConfigurationResolver,
        record_store: RecordStore,
        batch_executor: BatchExecutor,
        job_scheduler: JobScheduler,
        config: Optional[EngineConfig] = None,
        audit: Optional[MergeAuditTrail] = None,
        bus: Optional[MessageBus] = None,
        scheduler: Optional[Scheduler] = None,
        draft_storage: Optional[DraftStorage] = None,
        initiator: str = "system"
    ):
        self.config = config or EngineConfig()
        self.resolver = resolver
        self.record_store = record_store
        self.bus = bus or MessageBus()
        self.audit = audit or MergeAuditTrail(self.config.audit_db_path)
        self.statistics = AuditStatistics(self.audit)
        self.initiator = initiator

        self.store = SessionStore(
            config=self.config,
            scheduler=scheduler,
            bus=self.bus,
            draft_storage=draft_storage or JsonFileDraftStorage(self.config.draft_path),
        )
        self.executor = MergeExecutor(
            record_store,
            self.audit,
            bus=self.bus,
            error_sink=self.store.report_error,
            source=self.store.instance_id,
            initiator=initiator,
        )
        self.bulk = BulkMergeCoordinator(self.executor, self.store, self.bus, source=self.store.instance_id)
        self.jobs = JobOrchestrator(
            self.store, batch_executor, self.audit,
            bus=self.bus, statistics=self.statistics, initiator=initiator,
        )
        self.schedules = ScheduleManager(self.store, job_scheduler, self.jobs, self.bus)

    @classmethod
    def local(
        cls,
        configurations: str | Path | Sequence[Dict],
        records: str | Path | LocalRecordStore,
        config: Optional[EngineConfig] = None,
        grouper: Optional[DuplicateGrouper] = None,
        **kwargs
    ) -> 'MergeSession':
        """Session over the in-process backends.

        Args:
            configurations: Configuration source (JSON path or records)
            records: Dataset path or an existing LocalRecordStore
            config: Engine configuration
            grouper: Duplicate grouper used by dry runs
        """
        resolver = ConfigurationResolver(configurations)
        store = records if isinstance(records, LocalRecordStore) else LocalRecordStore.from_file(records)
        executor = LocalBatchExecutor(store, resolver, grouper)
        return cls(resolver, store, executor, LocalScheduler(executor), config=config, **kwargs)

    # Configurations

    async def load_configurations(self, force: bool = False) -> List[MatchConfiguration]:
        """Active configurations, from cache while the section is fresh.

        Raises:
            ConfigurationError: If the configuration source is missing or malformed
            AccessError: If read permission is denied
        """
        if not force and self.store.is_cache_valid("configurations"):
            return list(self.store.get_state().configurations.items)

        self.store.dispatch(ActionType.SET_LOADING, True)
        try:
            configurations = self.resolver.list_active_configurations()
        except (ConfigurationError, AccessError) as e:
            self.store.report_error(self.SOURCE, "list_active_configurations", e)
            raise
        finally:
            self.store.dispatch(ActionType.SET_LOADING, False)

        self.store.dispatch(ActionType.SET_CONFIGURATIONS, configurations)
        return configurations

    def get_configuration(self, config_id: str) -> MatchConfiguration:
        for configuration in self.store.get_state().configurations.items:
            if configuration.id == config_id:
                return configuration
        return self.resolver.get_configuration(config_id)

    def select_configuration(self, config_id: Optional[str]) -> Optional[MatchConfiguration]:
        configuration = self.get_configuration(config_id) if config_id else None
        self.store.dispatch(ActionType.SELECT_CONFIGURATION, configuration)
        return configuration

    # Groups

    def get_group(self, group_id: str) -> DuplicateGroup:
        group = self.store.get_state().groups.get(group_id)
        if group is None:
            raise KeyError(f"Unknown duplicate group: {group_id}")
        return group

    def update_group(
        self,
        group_id: str,
        master_id: Optional[str] = None,
        excluded: Optional[bool] = None,
        flagged: Optional[bool] = None,
        expanded: Optional[bool] = None
    ) -> DuplicateGroup:
        """Apply operator changes to a group (set master, exclude, flag, expand)."""
        group = self.get_group(group_id)
        if master_id is not None:
            group = set_master(group, master_id)
        if excluded is not None:
            group = group.with_excluded(excluded)
        if flagged is not None:
            group = group.with_flagged(flagged)
        if expanded is not None:
            group = group.with_expanded(expanded)
        self.store.dispatch(ActionType.UPDATE_GROUP, group)
        return group

    def _configuration_for(self, group: DuplicateGroup) -> Optional[MatchConfiguration]:
        selected = self.store.get_state().configurations.selected
        if selected is not None and selected.object_type == group.object_type:
            return selected
        for configuration in self.store.get_state().configurations.items:
            if configuration.object_type == group.object_type:
                return configuration
        return None

    async def preview_group(
        self,
        group_id: str,
        fields: Optional[Sequence[str]] = None,
        master_id: Optional[str] = None,
        selections: Optional[Mapping[str, object]] = None
    ) -> MergePreview:
        """Load a group's records and compute its merge preview.

        The master is, in order: master_id, the group's current master, or
        the configuration strategy's pick.

        Raises:
            RemoteExecutionError: If loading the records failed
        """
        group = self.get_group(group_id)
        configuration = self._configuration_for(group)
        fields = list(fields or default_fields(group.object_type))

        try:
            snapshots = await self.record_store.load_records(
                group.object_type, group.sorted_members(), None
            )
        except Exception as e:
            record = self.store.report_error(self.SOURCE, "load_records", e)
            raise RemoteExecutionError(f"Loading records failed: {record.message}") from e

        if master_id is not None:
            group = set_master(group, master_id)
        elif group.master_record_id is None:
            strategy = configuration.master_strategy if configuration else None
            if strategy is None:
                raise ValidationError(f"No master strategy for {group.object_type}",
                                      missing_fields=['master_record_id'])
            group = group.with_master(select_master(group, strategy, snapshots))

        if group != self.store.get_state().groups.get(group_id):
            self.store.dispatch(ActionType.UPDATE_GROUP, group)

        preview = MergePreview.build(group, group.master_record_id, fields, snapshots)
        for field_name, value in (selections or {}).items():
            preview = preview.with_selection(field_name, value)
        return preview

    async def merge_group(
        self,
        group_id: str,
        preview: Optional[MergePreview] = None
    ) -> MergeResult:
        group = self.get_group(group_id)
        return await self.bulk.merge_group(group, preview, self._configuration_for(group))

    async def merge_groups(
        self,
        group_ids: Optional[Sequence[str]] = None,
        previews: Optional[Mapping[str, MergePreview]] = None
    ) -> BulkMergeResult:
        """Merge groups sequentially; all loaded groups when none are named."""
        state = self.store.get_state()
        if group_ids is None:
            groups = [g for g in state.groups.items if g.id not in state.groups.merged]
        else:
            groups = [self.get_group(gid) for gid in group_ids]
        return await self.bulk.merge_groups(groups, previews, configuration_for=self._configuration_for)

    # Statistics and audit

    async def refresh_statistics(self, time_range: str = "ALL", force: bool = False) -> Statistics:
        time_range = DateRange.parse(time_range).value
        current = self.store.get_state().statistics
        if not force and current.time_range == time_range and self.store.is_cache_valid("statistics"):
            return current
        statistics = await self.statistics.get_statistics(time_range)
        self.store.dispatch(ActionType.UPDATE_STATISTICS, statistics)
        return self.store.get_state().statistics

    def list_merge_logs(
        self,
        object_type: Optional[str] = None,
        config_id: Optional[str] = None,
        page_size: Optional[int] = None,
        page_number: int = 1,
        date_range: str = "ALL"
    ) -> MergeLogPage:
        page = self.audit.list_merge_logs(
            object_type=object_type,
            config_id=config_id,
            page_size=page_size or self.config.page_size,
            page_number=page_number,
            date_range=date_range,
        )
        self.store.dispatch(ActionType.UPDATE_PAGINATION, {
            'page_size': page.page_size,
            'current_page': page.page_number,
            'total_records': page.total_records,
            'total_pages': page.total_pages,
        })
        return page

    def close(self) -> None:
        self.store.dispose()
        self.audit.close()

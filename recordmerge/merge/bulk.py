"""
Sequential merging of several duplicate groups.

Groups are merged strictly one after another: the merge of a group is
only started once the previous group's outcome is known. A group that is
still being merged cannot be submitted again.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

from ..core.errors import ValidationError
from ..core.models import DuplicateGroup, MatchConfiguration
from ..messaging.bus import MessageBus
from ..messaging.messages import (
    BulkMergeCompleted,
    BulkMergeStarting,
    GroupMergeCompleted,
    GroupMergeError,
    GroupMergeStarting,
    new_correlation_id,
)
from ..state.actions import ActionType
from ..state.store import SessionStore
from .conflict_resolver import MergePreview
from .merger import MergeExecutor, MergeResult

logger = logging.getLogger(__name__)


@dataclass
class BulkMergeResult:
    """Outcome of a bulk merge, per group."""
    results: Dict[str, MergeResult] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [gid for gid, r in self.results.items() if r.success]

    @property
    def failed(self) -> List[str]:
        return [gid for gid, r in self.results.items() if not r.success]


class BulkMergeCoordinator:
    """Merges groups one at a time and tracks which are in flight."""

    def __init__(
        self,
        executor: MergeExecutor,
        store: Optional[SessionStore] = None,
        bus: Optional[MessageBus] = None,
        source: str = "bulk-merge"
    ):
        self.executor = executor
        self.store = store
        self.bus = bus
        self.source = source
        self._processing: Set[str] = set()

    def is_processing(self, group_id: str) -> bool:
        return group_id in self._processing

    def _publish(self, payload, correlation_id: Optional[str] = None) -> None:
        if self.bus is not None:
            self.bus.publish(payload, source=self.source, correlation_id=correlation_id)

    def _dispatch(self, action: ActionType, payload) -> None:
        if self.store is not None:
            self.store.dispatch(action, payload)

    async def merge_group(
        self,
        group: DuplicateGroup,
        preview: Optional[MergePreview] = None,
        configuration: Optional[MatchConfiguration] = None,
        job_id: Optional[str] = None
    ) -> MergeResult:
        """Merge one group into its master.

        Raises:
            ValidationError: If the group is already being merged, or the
                merge preconditions fail
        """
        if group.id in self._processing:
            raise ValidationError(f"Group {group.id} is already being merged",
                                  missing_fields=['group_id'])
        if group.master_record_id is None:
            raise ValidationError(f"Group {group.id} has no master record",
                                  missing_fields=['master_record_id'])
        if preview is not None and preview.master_id != group.master_record_id:
            raise ValidationError(
                f"Preview of group {group.id} was computed for another master",
                missing_fields=['master_record_id']
            )

        self._processing.add(group.id)
        self._dispatch(ActionType.SET_GROUP_PROCESSING, {'group_id': group.id, 'processing': True})
        self._publish(GroupMergeStarting(group.id))

        try:
            result = await self.executor.submit_merge(
                group.master_record_id,
                group.duplicate_ids(),
                preview if preview is not None else (),
                object_type=group.object_type,
                configuration=configuration,
                job_id=job_id,
            )
        except ValidationError as e:
            self._dispatch(ActionType.SET_GROUP_RESULT,
                           {'group_id': group.id, 'success': False, 'error': e.message})
            self._publish(GroupMergeError(group.id, (e.message,)))
            raise
        finally:
            self._processing.discard(group.id)

        if result.success:
            self._dispatch(ActionType.SET_GROUP_RESULT, {'group_id': group.id, 'success': True})
            if result.log is not None:
                self._dispatch(ActionType.ADD_MERGE_RESULT, result.log)
            self._publish(GroupMergeCompleted(group.id, result.merged_id), result.correlation_id)
        else:
            self._dispatch(ActionType.SET_GROUP_RESULT, {
                'group_id': group.id, 'success': False, 'error': "; ".join(result.errors),
            })
            self._publish(GroupMergeError(group.id, tuple(result.errors)), result.correlation_id)

        return result

    async def merge_groups(
        self,
        groups: Sequence[DuplicateGroup],
        previews: Optional[Mapping[str, MergePreview]] = None,
        configuration: Optional[MatchConfiguration] = None,
        job_id: Optional[str] = None,
        configuration_for: Optional[Callable[[DuplicateGroup], Optional[MatchConfiguration]]] = None
    ) -> BulkMergeResult:
        """Merge groups in order, each after the previous has settled.

        Excluded groups are skipped. A failing group does not stop the run.
        configuration_for, when given, picks each group's configuration
        instead of the shared one.
        """
        previews = previews or {}
        outcome = BulkMergeResult()
        correlation_id = new_correlation_id()

        eligible = [g for g in groups if not g.excluded]
        outcome.skipped = [g.id for g in groups if g.excluded]
        self._publish(BulkMergeStarting(tuple(g.id for g in eligible)), correlation_id)

        for group in eligible:
            try:
                outcome.results[group.id] = await self.merge_group(
                    group,
                    previews.get(group.id),
                    configuration_for(group) if configuration_for else configuration,
                    job_id,
                )
            except ValidationError as e:
                logger.warning(f"Skipping merge of group {group.id}: {e.message}")
                outcome.results[group.id] = MergeResult(
                    success=False, merged_id=None, errors=[e.message]
                )

        logger.info(
            f"Bulk merge finished: {len(outcome.succeeded)} merged, "
            f"{len(outcome.failed)} failed, {len(outcome.skipped)} skipped"
        )
        self._publish(
            BulkMergeCompleted(
                tuple(outcome.succeeded), tuple(outcome.failed), tuple(outcome.skipped)
            ),
            correlation_id,
        )
        return outcome

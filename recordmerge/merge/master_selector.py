"""
Master record selection for duplicate groups.

Strategies are pure and total: given the same group and snapshots they
always return exactly one member id. Ties, and members whose snapshot or
timestamp is missing, fall back to record id ordering.
"""

from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..core.errors import ValidationError
from ..core.models import DuplicateGroup, MasterStrategy, RecordSnapshot

# Sorts after every real timestamp, so members without one never win on age
_NO_TIME = datetime.max


def _oldest_created_key(snapshot: Optional[RecordSnapshot]) -> Tuple:
    created = snapshot.created_at if snapshot and snapshot.created_at else _NO_TIME
    return (created,)


def _most_recent_key(snapshot: Optional[RecordSnapshot]) -> Tuple:
    # Negate via ordinal so "larger is better" sorts first; missing sorts last
    if snapshot is None or snapshot.modified_at is None:
        return (1, 0.0)
    return (0, -snapshot.modified_at.timestamp())


def _most_complete_key(snapshot: Optional[RecordSnapshot]) -> Tuple:
    return (-(snapshot.completeness() if snapshot else 0),)


_STRATEGY_KEYS: Dict[MasterStrategy, Callable[[Optional[RecordSnapshot]], Tuple]] = {
    MasterStrategy.OLDEST_CREATED: _oldest_created_key,
    MasterStrategy.MOST_RECENT: _most_recent_key,
    MasterStrategy.MOST_COMPLETE: _most_complete_key,
}


def select_master(
    group: DuplicateGroup,
    strategy: MasterStrategy,
    snapshots: Optional[Mapping[str, RecordSnapshot]] = None
) -> str:
    """Pick the master record of a group.

    Args:
        group: Duplicate group
        strategy: Named selection strategy
        snapshots: Loaded records keyed by id

    Returns:
        Id of the selected member

    Raises:
        ValidationError: If the group has no members
    """
    if not group.member_record_ids:
        raise ValidationError(f"Group {group.id} has no members")

    snapshots = snapshots or {}
    key = _STRATEGY_KEYS[strategy]

    return min(
        group.sorted_members(),
        key=lambda rid: key(snapshots.get(rid)) + (rid,)
    )


def apply_strategy(
    group: DuplicateGroup,
    strategy: MasterStrategy,
    snapshots: Optional[Mapping[str, RecordSnapshot]] = None
) -> DuplicateGroup:
    """Return the group with its master set by the strategy."""
    return group.with_master(select_master(group, strategy, snapshots))


def set_master(group: DuplicateGroup, record_id: str) -> DuplicateGroup:
    """Manually override the master of a group.

    Raises:
        ValidationError: If record_id is not a member of the group
    """
    if record_id not in group.member_record_ids:
        raise ValidationError(
            f"Record {record_id} is not a member of group {group.id}",
            missing_fields=['master_record_id']
        )
    return group.with_master(record_id)

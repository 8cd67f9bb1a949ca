"""
Field-level merge preview and conflict resolution.

Computes, for every previewed field of a duplicate group, the value the
master record will carry after the merge and whether the duplicates hold
values that would be lost.

Resolution rules per field:
1. The master's own non-blank value is the base
2. A blank master value is filled from the first non-blank duplicate,
   scanning duplicates in record id order
3. Non-blank duplicate values that differ from the base are conflicts;
   the master value wins unless the operator picks another one
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import ValidationError
from ..core.models import (
    DuplicateGroup,
    FieldResolution,
    RecordSnapshot,
    ResolutionStatus,
)

# Fields previewed when a caller does not name any
DEFAULT_PREVIEW_FIELDS: Dict[str, Tuple[str, ...]] = {
    'Account': (
        'Name', 'Phone', 'Website', 'BillingStreet',
        'BillingCity', 'BillingState', 'BillingPostalCode',
    ),
    'Contact': ('FirstName', 'LastName', 'Email', 'Phone', 'Title', 'Department'),
    'Lead': ('FirstName', 'LastName', 'Email', 'Phone', 'Company', 'Title'),
}

NO_CONFLICTS_NOTE = "No conflicts to preserve"


def default_fields(object_type: str) -> Tuple[str, ...]:
    """Preview fields for an object type, falling back to Name."""
    return DEFAULT_PREVIEW_FIELDS.get(object_type, ('Name',))


def _value(snapshots: Mapping[str, RecordSnapshot], record_id: str, field_name: str) -> Any:
    snapshot = snapshots.get(record_id)
    return snapshot.value(field_name) if snapshot else None


def resolve_field(
    field_name: str,
    master_id: str,
    duplicate_ids: Sequence[str],
    snapshots: Mapping[str, RecordSnapshot],
    label: Optional[str] = None
) -> FieldResolution:
    """Resolve one field across a group.

    Args:
        field_name: Field to resolve
        master_id: Id of the master record
        duplicate_ids: Non-master members, already in scan order
        snapshots: Loaded records keyed by id
        label: Display label, defaults to the field name

    Returns:
        FieldResolution for the field
    """
    master_value = _value(snapshots, master_id, field_name)
    base = master_value
    source = master_id if master_value is not None else None

    if base is None:
        for record_id in duplicate_ids:
            candidate = _value(snapshots, record_id, field_name)
            if candidate is not None:
                base = candidate
                source = record_id
                break

    conflicts: List[Any] = []
    for record_id in duplicate_ids:
        candidate = _value(snapshots, record_id, field_name)
        if candidate is None or candidate == base or candidate in conflicts:
            continue
        conflicts.append(candidate)

    if conflicts:
        status = ResolutionStatus.CONFLICT
    elif source == master_id:
        status = ResolutionStatus.UNCHANGED
    elif base is None:
        # Blank everywhere: nothing to fill, master keeps its (empty) value
        status = ResolutionStatus.UNCHANGED
    else:
        status = ResolutionStatus.FILLED

    return FieldResolution(
        field_name=field_name,
        label=label or field_name,
        master_value=master_value,
        candidate_values=tuple(conflicts),
        status=status,
        chosen_value=base,
        source_record_id=source,
    )


def compute_resolutions(
    group: DuplicateGroup,
    master_id: str,
    fields: Sequence[str],
    snapshots: Mapping[str, RecordSnapshot],
    labels: Optional[Mapping[str, str]] = None
) -> List[FieldResolution]:
    """Compute the field resolutions for a group.

    Pure: identical arguments always produce an identical list.

    Args:
        group: Duplicate group being previewed
        master_id: Member chosen as master
        fields: Fields to resolve, in display order
        snapshots: Loaded records keyed by id
        labels: Optional display labels keyed by field name

    Returns:
        One FieldResolution per field, in the order given

    Raises:
        ValidationError: If master_id is not a member of the group
    """
    if master_id not in group.member_record_ids:
        raise ValidationError(
            f"Master {master_id} is not a member of group {group.id}",
            missing_fields=['master_record_id']
        )

    labels = labels or {}
    duplicate_ids = [rid for rid in group.sorted_members() if rid != master_id]

    return [
        resolve_field(f, master_id, duplicate_ids, snapshots, labels.get(f))
        for f in fields
    ]


@dataclass(frozen=True)
class MergePreview:
    """Field resolutions for one group, with operator overrides applied."""
    group: DuplicateGroup
    master_id: str
    resolutions: Tuple[FieldResolution, ...]

    @classmethod
    def build(
        cls,
        group: DuplicateGroup,
        master_id: str,
        fields: Sequence[str],
        snapshots: Mapping[str, RecordSnapshot],
        labels: Optional[Mapping[str, str]] = None
    ) -> 'MergePreview':
        resolutions = compute_resolutions(group, master_id, fields, snapshots, labels)
        return cls(group=group, master_id=master_id, resolutions=tuple(resolutions))

    @property
    def has_conflicts(self) -> bool:
        return any(r.status == ResolutionStatus.CONFLICT for r in self.resolutions)

    @property
    def conflicts(self) -> List[FieldResolution]:
        return [r for r in self.resolutions if r.status == ResolutionStatus.CONFLICT]

    def get(self, field_name: str) -> FieldResolution:
        for resolution in self.resolutions:
            if resolution.field_name == field_name:
                return resolution
        raise KeyError(field_name)

    def merged_values(self) -> Dict[str, Any]:
        """Values the master will carry after the merge."""
        return {r.field_name: r.chosen_value for r in self.resolutions}

    def with_selection(self, field_name: str, value: Any) -> 'MergePreview':
        """Pick the value a field keeps, overriding master-wins.

        Raises:
            KeyError: If the field is not part of the preview
            ValidationError: If no group member holds the value
        """
        current = self.get(field_name)
        allowed = [current.master_value, current.chosen_value, *current.candidate_values]
        if value not in allowed:
            raise ValidationError(
                f"Value {value!r} is not held by any record for {field_name}",
                missing_fields=[field_name]
            )

        updated = replace(current, chosen_value=value, explicitly_chosen=True)
        resolutions = tuple(
            updated if r.field_name == field_name else r for r in self.resolutions
        )
        return replace(self, resolutions=resolutions)

    def preserved_values(self) -> Dict[str, List[Any]]:
        """Conflicting values that will not survive on the master, per field."""
        preserved: Dict[str, List[Any]] = {}
        for resolution in self.conflicts:
            losing = [
                v for v in (resolution.master_value, *resolution.candidate_values)
                if v is not None and v != resolution.chosen_value
            ]
            if losing:
                preserved[resolution.label] = losing
        return preserved

    def conflict_summary(self) -> str:
        """Human-readable note of the values lost to conflicts.

        Stored with the merge log so the discarded values stay traceable.
        """
        preserved = self.preserved_values()
        if not preserved:
            return NO_CONFLICTS_NOTE

        lines = ["Data preserved from merge operation:", "", "== CONFLICTING VALUES =="]
        for label, values in preserved.items():
            lines.append(f"{label}: {', '.join(str(v) for v in values)}")
        return "\n".join(lines) + "\n"

    def snapshot(self) -> Tuple[Dict[str, Any], ...]:
        """Resolutions as plain dictionaries for the audit log."""
        return tuple(r.to_dict() for r in self.resolutions)

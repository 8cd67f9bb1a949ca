"""
Merge execution for duplicate groups.

Validates a merge request, hands the mutation to the record store and
records exactly one audit log entry for every merge that succeeds.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from ..backends.interfaces import RecordStore
from ..core.errors import RemoteExecutionError, ValidationError, sanitize_message
from ..core.models import FieldResolution, MatchConfiguration, MergeLog, ResolutionStatus
from ..messaging.bus import MessageBus
from ..messaging.messages import DuplicatesMerged, MergeOperation, MergeStatus, new_correlation_id
from ..utils.audit_trail import MergeAuditTrail
from .conflict_resolver import NO_CONFLICTS_NOTE, MergePreview

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, str, BaseException], Any]


@dataclass
class MergeResult:
    """Result of a merge operation."""
    success: bool
    merged_id: Optional[str]
    errors: List[str] = field(default_factory=list)
    merged_ids: List[str] = field(default_factory=list)
    log: Optional[MergeLog] = None
    correlation_id: Optional[str] = None

    def __str__(self) -> str:
        """Human-readable result."""
        if self.success:
            return (
                f"✓ Merged {len(self.merged_ids)} record(s) into {self.merged_id}"
            )
        return f"✗ Merge failed\n  Errors: {', '.join(self.errors)}"


def default_idempotency_key(master_id: str, duplicate_ids: Sequence[str]) -> str:
    """Key identifying one logical merge of a set of records."""
    material = "|".join([master_id, *sorted(duplicate_ids)])
    return hashlib.sha256(material.encode('utf-8')).hexdigest()[:32]


def missing_required_fields(
    required_fields: Sequence[str],
    resolutions: Sequence[FieldResolution]
) -> List[str]:
    """Required fields without a usable resolved value.

    A field is usable when its chosen value is set and it is either free of
    conflicts or its value was explicitly chosen by the operator.
    """
    by_name = {r.field_name: r for r in resolutions}
    missing = []
    for name in required_fields:
        resolution = by_name.get(name)
        if resolution is None or resolution.chosen_value is None:
            missing.append(name)
        elif resolution.status == ResolutionStatus.CONFLICT and not resolution.explicitly_chosen:
            missing.append(name)
    return missing


class MergeExecutor:
    """
    Submits validated merges to the record store.

    Merge Process:
    1. Validate master, duplicates and required fields (no network yet)
    2. Claim the idempotency key; a key already logged or claimed is rejected
    3. Call the record store
    4. On success write one MergeLog; on failure release the claim

    Every step of one merge is announced as a MergeOperation message with
    a shared correlation id.
    """

    def __init__(
        self,
        record_store: RecordStore,
        audit: MergeAuditTrail,
        bus: Optional[MessageBus] = None,
        error_sink: Optional[ErrorSink] = None,
        source: str = "merge-executor",
        initiator: str = "system"
    ):
        """
        Initialize the executor.

        Args:
            record_store: Store performing the actual merge
            audit: Audit trail receiving merge logs
            bus: Message bus for progress messages
            error_sink: Called as error_sink(source, operation, exc) for failures
            source: Origin id stamped on published messages
            initiator: Default user recorded on merge logs
        """
        self.record_store = record_store
        self.audit = audit
        self.bus = bus
        self.error_sink = error_sink
        self.source = source
        self.initiator = initiator

    def _publish(self, payload, correlation_id: str) -> None:
        if self.bus is not None:
            self.bus.publish(payload, source=self.source, correlation_id=correlation_id)

    def validate(
        self,
        master_id: Optional[str],
        duplicate_ids: Sequence[str],
        resolutions: Sequence[FieldResolution],
        object_type: Optional[str],
        required_fields: Sequence[str] = ()
    ) -> None:
        """Check merge preconditions.

        Raises:
            ValidationError: Naming every missing or invalid field
        """
        if not master_id:
            raise ValidationError("A master record must be selected", missing_fields=['master_id'])
        if not duplicate_ids:
            raise ValidationError("At least one duplicate record is required",
                                  missing_fields=['duplicate_ids'])
        if master_id in duplicate_ids:
            raise ValidationError("The master record cannot also be a duplicate",
                                  missing_fields=['duplicate_ids'])
        if len(set(duplicate_ids)) != len(duplicate_ids):
            raise ValidationError("Duplicate ids must be unique", missing_fields=['duplicate_ids'])
        if not object_type:
            raise ValidationError("Object type is required", missing_fields=['object_type'])

        missing = missing_required_fields(required_fields, resolutions)
        if missing:
            raise ValidationError(
                f"Required fields unresolved: {', '.join(missing)}",
                missing_fields=missing
            )

    async def submit_merge(
        self,
        master_id: Optional[str],
        duplicate_ids: Sequence[str],
        resolutions: Sequence[FieldResolution] | MergePreview = (),
        object_type: Optional[str] = None,
        configuration: Optional[MatchConfiguration] = None,
        job_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        initiator: Optional[str] = None
    ) -> MergeResult:
        """Merge duplicates into a master record.

        Args:
            master_id: Record that survives
            duplicate_ids: Records merged into the master
            resolutions: Field resolutions, or a whole MergePreview
            object_type: Object type; defaults to the configuration's
            configuration: Configuration supplying required fields
            job_id: Job the merge belongs to, if any
            idempotency_key: Key guarding against a repeated merge
            initiator: User recorded on the merge log

        Returns:
            MergeResult; success=False when the record store refused the merge

        Raises:
            ValidationError: If preconditions fail, before any network call
        """
        preview = resolutions if isinstance(resolutions, MergePreview) else None
        field_resolutions = list(preview.resolutions if preview else resolutions)
        duplicate_ids = list(duplicate_ids)

        if object_type is None and configuration is not None:
            object_type = configuration.object_type
        required = configuration.required_fields if configuration else ()

        self.validate(master_id, duplicate_ids, field_resolutions, object_type, required)

        key = idempotency_key or default_idempotency_key(master_id, duplicate_ids)
        self.audit.claim_idempotency_key(key)

        correlation_id = new_correlation_id()
        self._publish(
            MergeOperation(MergeStatus.STARTING, master_id, tuple(duplicate_ids)),
            correlation_id
        )
        logger.info(f"Merging {len(duplicate_ids)} record(s) into {master_id} [{correlation_id}]")

        result = None
        try:
            result = await self._execute(
                master_id, duplicate_ids, field_resolutions, preview, object_type,
                configuration, job_id, key, initiator, correlation_id
            )
            return result
        finally:
            if result is None or not result.success:
                self.audit.release_idempotency_key(key)
            if result is None:
                self._publish(
                    MergeOperation(MergeStatus.ERROR, master_id, tuple(duplicate_ids),
                                   errors=("Merge interrupted",)),
                    correlation_id
                )

    async def _execute(
        self,
        master_id: str,
        duplicate_ids: List[str],
        field_resolutions: List[FieldResolution],
        preview: Optional[MergePreview],
        object_type: str,
        configuration: Optional[MatchConfiguration],
        job_id: Optional[str],
        key: str,
        initiator: Optional[str],
        correlation_id: str
    ) -> MergeResult:
        try:
            response = await self.record_store.merge_records(master_id, duplicate_ids, object_type)
        except Exception as e:
            if self.error_sink is not None:
                self.error_sink(self.source, "merge_records", e)
            else:
                logger.error(f"Merge into {master_id} failed: {e}", exc_info=True)
            errors = [sanitize_message(str(e) or type(e).__name__)]
            return self._failed(master_id, duplicate_ids, errors, correlation_id)

        if not response.success:
            errors = [sanitize_message(msg) for msg in response.errors] or ["Merge failed"]
            logger.warning(f"Record store refused merge into {master_id}: {errors}")
            if self.error_sink is not None:
                self.error_sink(self.source, "merge_records", RemoteExecutionError(
                    f"Merge into {master_id} was refused", details="; ".join(errors)
                ))
            return self._failed(master_id, duplicate_ids, errors, correlation_id)

        note = preview.conflict_summary() if preview else NO_CONFLICTS_NOTE
        log = self.audit.log_merge(MergeLog(
            master_id=master_id,
            merged_ids=tuple(duplicate_ids),
            object_type=object_type,
            initiator=initiator or self.initiator,
            job_id=job_id,
            config_id=configuration.id if configuration else None,
            field_resolution_snapshot=tuple(r.to_dict() for r in field_resolutions),
            note=note,
            idempotency_key=key,
        ))

        merged_id = response.merged_id or master_id
        self._publish(
            MergeOperation(MergeStatus.COMPLETED, master_id, tuple(duplicate_ids), merged_id=merged_id),
            correlation_id
        )
        self._publish(DuplicatesMerged(master_id, tuple(duplicate_ids), object_type), correlation_id)

        return MergeResult(
            success=True,
            merged_id=merged_id,
            merged_ids=duplicate_ids,
            log=log,
            correlation_id=correlation_id,
        )

    def _failed(
        self,
        master_id: str,
        duplicate_ids: List[str],
        errors: List[str],
        correlation_id: str
    ) -> MergeResult:
        self._publish(
            MergeOperation(MergeStatus.ERROR, master_id, tuple(duplicate_ids), errors=tuple(errors)),
            correlation_id
        )
        return MergeResult(
            success=False,
            merged_id=None,
            errors=errors,
            correlation_id=correlation_id,
        )

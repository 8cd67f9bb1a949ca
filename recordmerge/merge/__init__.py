"""
Master selection, merge preview and merge execution.

This module turns a detected duplicate group into a merge: it picks the
master record, previews how every field resolves, and submits the merge.
"""

from .master_selector import select_master, set_master, apply_strategy
from .conflict_resolver import (
    MergePreview,
    compute_resolutions,
    resolve_field,
    default_fields,
    DEFAULT_PREVIEW_FIELDS,
)
from .merger import MergeExecutor, MergeResult, default_idempotency_key
from .bulk import BulkMergeCoordinator, BulkMergeResult

__all__ = [
    'select_master',
    'set_master',
    'apply_strategy',
    'MergePreview',
    'compute_resolutions',
    'resolve_field',
    'default_fields',
    'DEFAULT_PREVIEW_FIELDS',
    'MergeExecutor',
    'MergeResult',
    'default_idempotency_key',
    'BulkMergeCoordinator',
    'BulkMergeResult',
]

"""Configuration and audit trail utilities."""

from .config import EngineConfig
from .audit_trail import MergeAuditTrail, MergeLogPage, DateRange, date_range_bounds

__all__ = [
    'EngineConfig',
    'MergeAuditTrail',
    'MergeLogPage',
    'DateRange',
    'date_range_bounds',
]

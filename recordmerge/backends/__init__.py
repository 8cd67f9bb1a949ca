"""
External collaborator interfaces and their in-process implementations.
"""

from .interfaces import (
    RecordStore,
    BatchExecutor,
    JobScheduler,
    StatisticsProvider,
    MergeResponse,
)
from .local import LocalRecordStore, LocalBatchExecutor, LocalScheduler, snapshot_from_dict

__all__ = [
    'RecordStore',
    'BatchExecutor',
    'JobScheduler',
    'StatisticsProvider',
    'MergeResponse',
    'LocalRecordStore',
    'LocalBatchExecutor',
    'LocalScheduler',
    'snapshot_from_dict',
]

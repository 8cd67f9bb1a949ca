"""
Typed in-process messaging between sessions and their consumers.
"""

from .bus import MessageBus, MessageRecorder, new_instance_id
from .messages import (
    Message,
    MessagePayload,
    MergeStatus,
    StoreUpdated,
    StoreSectionUpdated,
    MergeOperation,
    DuplicatesMerged,
    JobStarted,
    JobCompleted,
    JobScheduled,
    ErrorOccurred,
    BulkMergeStarting,
    BulkMergeCompleted,
    GroupMergeStarting,
    GroupMergeCompleted,
    GroupMergeError,
    new_correlation_id,
)

__all__ = [
    'MessageBus',
    'MessageRecorder',
    'new_instance_id',
    'Message',
    'MessagePayload',
    'MergeStatus',
    'StoreUpdated',
    'StoreSectionUpdated',
    'MergeOperation',
    'DuplicatesMerged',
    'JobStarted',
    'JobCompleted',
    'JobScheduled',
    'ErrorOccurred',
    'BulkMergeStarting',
    'BulkMergeCompleted',
    'GroupMergeStarting',
    'GroupMergeCompleted',
    'GroupMergeError',
    'new_correlation_id',
]

"""
Duplicate grouping used by the local batch executor.
"""

from .grouper import DuplicateGrouper

__all__ = ['DuplicateGrouper']

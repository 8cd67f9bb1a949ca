"""Duplicate and merge statistics computed from the audit trail."""

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Optional

from ..state.state import ObjectStatistics, Statistics
from .audit_trail import DateRange, MergeAuditTrail, date_range_bounds

logger = logging.getLogger(__name__)


class AuditStatistics:
    """StatisticsProvider over a MergeAuditTrail.

    Duplicates come from completed job runs, merges from the merge log.
    Trends are per-day buckets (ISO dates) over the range.
    """

    def __init__(self, audit: MergeAuditTrail):
        self.audit = audit

    def compute(self, time_range: str = "ALL", now: Optional[datetime] = None) -> Statistics:
        range_name = DateRange.parse(time_range)
        start, end = date_range_bounds(range_name, now)

        duplicates_by_day: Counter = Counter()
        merges_by_day: Counter = Counter()
        by_object: Dict[str, Dict[str, int]] = {}
        duplicates_found = 0
        records_merged = 0

        for job in self.audit.jobs_between(start, end):
            found = job['duplicates_found'] or 0
            duplicates_found += found
            day = job['completion_time'][:10]
            duplicates_by_day[day] += found
            if job['object_type']:
                stats = by_object.setdefault(job['object_type'], {'duplicates': 0, 'merged': 0})
                stats['duplicates'] += found

        for log in self.audit.merges_between(start, end):
            records_merged += log.records_merged
            merges_by_day[log.execution_time.date().isoformat()] += log.records_merged
            stats = by_object.setdefault(log.object_type, {'duplicates': 0, 'merged': 0})
            stats['merged'] += log.records_merged

        logger.debug(f"Statistics for {range_name.value}: {duplicates_found} duplicates, {records_merged} merged")

        return Statistics(
            time_range=range_name.value,
            duplicates_found=duplicates_found,
            records_merged=records_merged,
            duplicates_trend=tuple(sorted(duplicates_by_day.items())),
            merges_trend=tuple(sorted(merges_by_day.items())),
            by_object={
                name: ObjectStatistics(total_duplicates=s['duplicates'], total_merged=s['merged'])
                for name, s in sorted(by_object.items())
            },
        )

    async def get_statistics(self, time_range: str = "ALL") -> Statistics:
        return self.compute(time_range)

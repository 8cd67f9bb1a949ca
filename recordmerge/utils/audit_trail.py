"""
Audit trail of merges and job runs.

Merge logs are append-only: one row per successful merge, never updated
or deleted. Job runs are kept alongside so statistics can be computed
over the same store.
"""

import json
import math
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import ValidationError
from ..core.models import MergeJob, MergeLog


class DateRange(Enum):
    """Named date filters for audit queries."""
    TODAY = "TODAY"
    YESTERDAY = "YESTERDAY"
    THIS_WEEK = "THIS_WEEK"
    THIS_MONTH = "THIS_MONTH"
    LAST_MONTH = "LAST_MONTH"
    LAST_30_DAYS = "LAST_30_DAYS"
    THIS_YEAR = "THIS_YEAR"
    ALL = "ALL"

    @classmethod
    def parse(cls, value: Any) -> 'DateRange':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"Unknown date range: {value}", missing_fields=['date_range'])


def date_range_bounds(
    date_range: DateRange | str,
    now: Optional[datetime] = None
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Start (inclusive) and end (exclusive) of a named range.

    Returns:
        (start, end); both None for ALL
    """
    date_range = DateRange.parse(date_range)
    now = now or datetime.now()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if date_range == DateRange.ALL:
        return None, None
    if date_range == DateRange.TODAY:
        return today, today + timedelta(days=1)
    if date_range == DateRange.YESTERDAY:
        return today - timedelta(days=1), today
    if date_range == DateRange.THIS_WEEK:
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=7)
    if date_range == DateRange.LAST_30_DAYS:
        return today - timedelta(days=29), today + timedelta(days=1)

    month_start = today.replace(day=1)
    if date_range == DateRange.THIS_MONTH:
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        return month_start, next_month
    if date_range == DateRange.LAST_MONTH:
        previous = (month_start - timedelta(days=1)).replace(day=1)
        return previous, month_start

    # THIS_YEAR
    year_start = today.replace(month=1, day=1)
    return year_start, year_start.replace(year=year_start.year + 1)


@dataclass
class MergeLogPage:
    """One page of merge logs."""
    records: List[MergeLog]
    page_size: int
    page_number: int
    total_records: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_records / self.page_size) if self.page_size else 0

    @property
    def pagination(self) -> Dict[str, int]:
        return {
            'page_size': self.page_size,
            'page_number': self.page_number,
            'total_records': self.total_records,
            'total_pages': self.total_pages,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'records': [r.to_dict() for r in self.records],
            'pagination': self.pagination,
        }


class MergeAuditTrail:
    """SQLite-backed audit trail for merges and job runs."""

    def __init__(self, database_path: str | Path):
        """Open (and create if needed) the audit database.

        Args:
            database_path: SQLite file, or ":memory:"
        """
        self.database_path = str(database_path)
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

        # Shared between the event loop thread and worker threads of the web API
        self.conn = sqlite3.connect(self.database_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self):
        """Create audit trail database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS merge_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_time TEXT NOT NULL,
                job_id TEXT,
                config_id TEXT,
                object_type TEXT NOT NULL,
                master_id TEXT NOT NULL,
                merged_ids TEXT NOT NULL,
                records_merged INTEGER NOT NULL,
                initiator TEXT NOT NULL,
                field_resolutions TEXT,
                note TEXT,
                idempotency_key TEXT UNIQUE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS job_history (
                job_id TEXT PRIMARY KEY,
                config_id TEXT NOT NULL,
                object_type TEXT,
                is_dry_run INTEGER NOT NULL,
                status TEXT NOT NULL,
                batch_size INTEGER,
                records_processed INTEGER DEFAULT 0,
                duplicates_found INTEGER DEFAULT 0,
                records_merged INTEGER DEFAULT 0,
                error_messages TEXT,
                submitted_at TEXT,
                completion_time TEXT
            )
        """)

        # Keys of merges submitted to the record store but not yet logged
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS merge_claim (
                idempotency_key TEXT PRIMARY KEY,
                claimed_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_merge_log_time
            ON merge_log(execution_time DESC)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_merge_log_object
            ON merge_log(object_type, config_id)
        """)

        self.conn.commit()

    def log_merge(self, entry: MergeLog) -> MergeLog:
        """Append a merge log entry.

        Args:
            entry: The merge to record

        Returns:
            The entry with its assigned id

        Raises:
            ValidationError: If the idempotency key was already recorded
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO merge_log (
                    execution_time, job_id, config_id, object_type, master_id,
                    merged_ids, records_merged, initiator, field_resolutions,
                    note, idempotency_key
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.execution_time.isoformat(),
                entry.job_id,
                entry.config_id,
                entry.object_type,
                entry.master_id,
                json.dumps(list(entry.merged_ids)),
                entry.records_merged,
                entry.initiator,
                json.dumps(list(entry.field_resolution_snapshot), default=str),
                entry.note,
                entry.idempotency_key,
            ))
            if entry.idempotency_key:
                cursor.execute("DELETE FROM merge_claim WHERE idempotency_key = ?",
                               (entry.idempotency_key,))
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise ValidationError(
                f"Merge already recorded for key {entry.idempotency_key}",
                missing_fields=['idempotency_key']
            ) from e

        self.conn.commit()
        return replace(entry, id=cursor.lastrowid)

    def has_idempotency_key(self, key: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM merge_log WHERE idempotency_key = ?", (key,))
        return cursor.fetchone() is not None

    def claim_idempotency_key(self, key: str) -> None:
        """Reserve a key before its merge reaches the record store.

        The claim is released by log_merge on success and by
        release_idempotency_key on failure. Connections sharing one
        database file see each other's claims.

        Raises:
            ValidationError: If the key is logged or claimed already
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO merge_claim (idempotency_key, claimed_at)
                SELECT ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM merge_log WHERE idempotency_key = ?)
            """, (key, datetime.now().isoformat(), key))
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise ValidationError(
                f"A merge for key {key} is already in progress",
                missing_fields=['idempotency_key']
            ) from e

        claimed = cursor.rowcount == 1
        self.conn.commit()
        if not claimed:
            raise ValidationError(
                f"Merge already recorded for key {key}",
                missing_fields=['idempotency_key']
            )

    def release_idempotency_key(self, key: str) -> None:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM merge_claim WHERE idempotency_key = ?", (key,))
        self.conn.commit()

    def get_merge_log(self, log_id: int) -> Optional[MergeLog]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM merge_log WHERE id = ?", (log_id,))
        row = cursor.fetchone()
        return self._row_to_log(row) if row else None

    def _filters(
        self,
        object_type: Optional[str],
        config_id: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
        time_column: str
    ) -> Tuple[str, List[Any]]:
        clauses, params = [], []
        if object_type:
            clauses.append("object_type = ?")
            params.append(object_type)
        if config_id:
            clauses.append("config_id = ?")
            params.append(config_id)
        if start is not None:
            clauses.append(f"{time_column} >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append(f"{time_column} < ?")
            params.append(end.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_merge_logs(
        self,
        object_type: Optional[str] = None,
        config_id: Optional[str] = None,
        page_size: int = 10,
        page_number: int = 1,
        date_range: DateRange | str = DateRange.ALL,
        now: Optional[datetime] = None
    ) -> MergeLogPage:
        """Page through merge logs, newest first.

        Args:
            object_type: Only this object type
            config_id: Only merges made under this configuration
            page_size: Rows per page
            page_number: 1-based page number
            date_range: Named date filter
            now: Reference time for the date filter

        Returns:
            The requested page and pagination totals
        """
        if page_size < 1 or page_number < 1:
            raise ValidationError("Page size and page number must be positive",
                                  missing_fields=['page_size', 'page_number'])

        start, end = date_range_bounds(date_range, now)
        where, params = self._filters(object_type, config_id, start, end, "execution_time")
        cursor = self.conn.cursor()

        cursor.execute(f"SELECT COUNT(*) FROM merge_log {where}", params)
        total = cursor.fetchone()[0]

        cursor.execute(f"""
            SELECT *
            FROM merge_log
            {where}
            ORDER BY execution_time DESC, id DESC
            LIMIT ? OFFSET ?
        """, (*params, page_size, (page_number - 1) * page_size))

        records = [self._row_to_log(row) for row in cursor.fetchall()]
        return MergeLogPage(records, page_size, page_number, total)

    def merges_between(
        self,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> List[MergeLog]:
        where, params = self._filters(None, None, start, end, "execution_time")
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM merge_log {where} ORDER BY execution_time", params)
        return [self._row_to_log(row) for row in cursor.fetchall()]

    def record_job(self, job: MergeJob, object_type: Optional[str] = None) -> None:
        """Insert or update the history row of a job."""
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO job_history (
                job_id, config_id, object_type, is_dry_run, status, batch_size,
                records_processed, duplicates_found, records_merged,
                error_messages, submitted_at, completion_time
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                status = excluded.status,
                object_type = COALESCE(excluded.object_type, job_history.object_type),
                records_processed = excluded.records_processed,
                duplicates_found = excluded.duplicates_found,
                records_merged = excluded.records_merged,
                error_messages = excluded.error_messages,
                completion_time = excluded.completion_time
        """, (
            job.id,
            job.config_id,
            object_type,
            int(job.is_dry_run),
            job.status.value,
            job.batch_size,
            job.records_processed,
            job.duplicates_found,
            job.records_merged,
            json.dumps(list(job.error_messages)),
            job.submitted_at.isoformat() if job.submitted_at else None,
            job.completion_time.isoformat() if job.completion_time else None,
        ))
        self.conn.commit()

    def jobs_between(
        self,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> List[Dict[str, Any]]:
        """Completed job rows whose completion time falls in the range."""
        where, params = self._filters(None, None, start, end, "completion_time")
        where = f"{where} AND completion_time IS NOT NULL" if where else "WHERE completion_time IS NOT NULL"
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM job_history {where} ORDER BY completion_time", params)

        jobs = []
        for row in cursor.fetchall():
            job = dict(row)
            job['error_messages'] = json.loads(job['error_messages'] or '[]')
            job['is_dry_run'] = bool(job['is_dry_run'])
            jobs.append(job)
        return jobs

    def _row_to_log(self, row: sqlite3.Row) -> MergeLog:
        """Convert database row to MergeLog."""
        data = dict(row)
        return MergeLog(
            id=data['id'],
            execution_time=datetime.fromisoformat(data['execution_time']),
            job_id=data['job_id'],
            config_id=data['config_id'],
            object_type=data['object_type'],
            master_id=data['master_id'],
            merged_ids=tuple(json.loads(data['merged_ids'])),
            initiator=data['initiator'],
            field_resolution_snapshot=tuple(json.loads(data['field_resolutions'] or '[]')),
            note=data['note'],
            idempotency_key=data['idempotency_key'],
        )

    def close(self):
        """Close the audit database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

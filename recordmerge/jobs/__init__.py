"""
Job lifecycle: draft, submission, observation and recurring schedules.
"""

from .orchestrator import JobOrchestrator, ALLOWED_TRANSITIONS, can_transition
from .schedule import ScheduleManager, compute_next_fire, daily_cron, validate_cron

__all__ = [
    'JobOrchestrator',
    'ALLOWED_TRANSITIONS',
    'can_transition',
    'ScheduleManager',
    'compute_next_fire',
    'daily_cron',
    'validate_cron',
]

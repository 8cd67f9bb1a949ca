"""Configuration for the merge engine and its session store."""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Configuration for the merge engine."""

    # Storage
    data_dir: Path = field(default_factory=lambda: Path(".recordmerge"))
    draft_path: Optional[Path] = None
    audit_db_path: Optional[Path] = None
    schedules_path: Optional[Path] = None

    # Notification throttling (seconds)
    throttle_window: float = 0.5

    # Bounded lists kept in the store
    max_errors: int = 10
    max_recent_configurations: int = 5
    max_recent_merges: int = 10

    # Base cache timeouts per section (seconds)
    cache_timeouts: Dict[str, float] = field(default_factory=lambda: {
        "configurations": 15 * 60,
        "jobs": 2 * 60,
        "statistics": 5 * 60,
        "groups": 5 * 60,
    })
    default_cache_timeout: float = 5 * 60

    # Adaptive timeout scaling
    adaptive_min_observations: int = 10
    adaptive_min_scale: float = 0.5
    adaptive_max_scale: float = 2.0

    # Jobs
    default_batch_size: int = 200
    max_batch_size: int = 2000
    poll_interval: float = 2.0

    # Audit log browsing
    page_size: int = 10

    def __post_init__(self):
        """Normalize paths and fill derived defaults."""
        self.data_dir = Path(self.data_dir)
        if self.draft_path is None:
            self.draft_path = self.data_dir / "draft_job.json"
        else:
            self.draft_path = Path(self.draft_path)
        if self.audit_db_path is None:
            self.audit_db_path = self.data_dir / "merge_audit.db"
        else:
            self.audit_db_path = Path(self.audit_db_path)
        if self.schedules_path is None:
            self.schedules_path = self.data_dir / "schedules.json"
        else:
            self.schedules_path = Path(self.schedules_path)

    def base_timeout(self, section: str) -> float:
        """Base cache timeout for a section."""
        return self.cache_timeouts.get(section, self.default_cache_timeout)

    @classmethod
    def from_file(cls, path: str | Path) -> 'EngineConfig':
        """Load configuration overrides from a JSON file.

        Unknown keys are ignored with a warning.

        Args:
            path: JSON file with top-level keys matching field names

        Returns:
            EngineConfig with the overrides applied
        """
        with open(path, 'r', encoding='utf-8') as f:
            data: Dict[str, Any] = json.load(f)

        known = {f.name for f in fields(cls)}
        overrides = {}
        for key, value in data.items():
            if key in known:
                overrides[key] = value
            else:
                logger.warning(f"Ignoring unknown config key: {key}")

        if 'cache_timeouts' in overrides:
            merged = cls().cache_timeouts
            merged.update(overrides['cache_timeouts'])
            overrides['cache_timeouts'] = merged

        return cls(**overrides)

"""
Persistence of the single draft job slot.

Drafts are a convenience cache, not a system of record: storage failures
are logged and otherwise ignored.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from ..core.models import DraftJob

logger = logging.getLogger(__name__)

DRAFT_KEY = "duplicationDraftJob"


class DraftStorage(Protocol):
    def read(self) -> Optional[DraftJob]:
        ...

    def write(self, draft: DraftJob) -> None:
        ...

    def clear(self) -> None:
        ...


class JsonFileDraftStorage:
    """Keeps the draft in a small JSON state file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read(self) -> Optional[DraftJob]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return DraftJob.from_dict(data[DRAFT_KEY])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not read draft job from {self.path}: {e}")
            return None

    def write(self, draft: DraftJob) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump({DRAFT_KEY: draft.to_dict()}, f, indent=2)
        except (OSError, TypeError) as e:
            logger.warning(f"Could not save draft job to {self.path}: {e}")

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove draft job {self.path}: {e}")


class MemoryDraftStorage:
    """Draft storage for tests and short-lived sessions."""

    def __init__(self):
        self._draft: Optional[DraftJob] = None

    def read(self) -> Optional[DraftJob]:
        return self._draft

    def write(self, draft: DraftJob) -> None:
        self._draft = draft

    def clear(self) -> None:
        self._draft = None

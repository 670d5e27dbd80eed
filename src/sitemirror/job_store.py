"""Progress snapshots for mirror jobs.

Snapshots are for progress reporting and resume only; a failed save is
logged by the caller and never fails a job.
"""

import json
import logging
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ["version", "job_id", "status", "config", "progress", "visited_urls", "queue"]


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, enum and set values."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


def write_json_atomic(filepath: Path, data: Any) -> None:
    """Write JSON to a temp file next to the target, then replace it."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp = filepath.with_name(f".{filepath.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, cls=DateTimeEncoder)
    os.replace(tmp, filepath)


class JobStore(Protocol):
    """Job-record store contract."""

    def save(self, snapshot: Dict[str, Any]) -> None: ...

    def load(self, job_id: str) -> Optional[Dict[str, Any]]: ...


class JsonJobStore:
    """Stores each job snapshot as ``<directory>/<job_id>.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def save(self, snapshot: Dict[str, Any]) -> None:
        """Save a snapshot produced by ``CrawlJob.get_state()``.

        Args:
            snapshot: State dictionary containing at least job_id
        """
        job_id = snapshot.get("job_id")
        if not job_id:
            raise ValueError("Snapshot has no job_id")
        snapshot.setdefault("progress", {})["last_updated"] = datetime.now().isoformat()
        write_json_atomic(self._path(job_id), snapshot)

    def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Load a snapshot if available.

        Returns:
            State dictionary if found and valid, None otherwise
        """
        path = self._path(job_id)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable job snapshot {path}: {e}")
            return None

        if all(field in state for field in REQUIRED_FIELDS):
            return state
        logger.warning(f"Job snapshot {path} is missing required fields")
        return None

    def list_jobs(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

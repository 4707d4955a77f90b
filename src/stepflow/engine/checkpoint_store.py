"""Checkpoint storage implementations.

Backends:
- InMemoryCheckpointStore: development, tests, single-process callers
- FileCheckpointStore: one JSON file per checkpoint under the state directory

Both are synchronous and guard their state with a threading.Lock; the engine
never blocks on I/O by itself, slow or remote storage is the caller's concern.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .checkpoint import Checkpoint
from .execution import utcnow
from .state_config import StateConfig

if TYPE_CHECKING:
    from ..settings import EngineSettings

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Abstract base class for checkpoint storage."""

    @abstractmethod
    def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        """Persist a checkpoint and return its id."""
        ...

    @abstractmethod
    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        """Load a checkpoint by id, None if not found."""
        ...

    @abstractmethod
    def list_checkpoints(self, execution_id: str | None = None) -> list[Checkpoint]:
        """List checkpoints oldest first, optionally for one execution."""
        ...

    @abstractmethod
    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """Delete a checkpoint, True if it existed."""
        ...

    def latest(self, execution_id: str) -> Checkpoint | None:
        """Most recent checkpoint of an execution."""
        checkpoints = self.list_checkpoints(execution_id)
        return checkpoints[-1] if checkpoints else None

    def cleanup_expired(self, max_age_seconds: int) -> int:
        """Remove checkpoints older than max_age_seconds, return count deleted."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        expired = [c.id for c in self.list_checkpoints() if c.created_at < cutoff]
        deleted = sum(1 for checkpoint_id in expired if self.delete_checkpoint(checkpoint_id))
        if deleted:
            logger.info(f"Removed {deleted} expired checkpoint(s)")
        return deleted


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory checkpoint storage (thread-safe)."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = threading.Lock()

    def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        with self._lock:
            self._checkpoints[checkpoint.id] = checkpoint
            return checkpoint.id

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        with self._lock:
            return self._checkpoints.get(checkpoint_id)

    def list_checkpoints(self, execution_id: str | None = None) -> list[Checkpoint]:
        with self._lock:
            checkpoints = list(self._checkpoints.values())

        if execution_id is not None:
            checkpoints = [c for c in checkpoints if c.execution_id == execution_id]
        # dict preserves insertion order; sort is stable for equal timestamps
        return sorted(checkpoints, key=lambda c: c.created_at)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        with self._lock:
            return self._checkpoints.pop(checkpoint_id, None) is not None


class FileCheckpointStore(CheckpointStore):
    """
    JSON-file checkpoint storage.

    Layout:
        <directory>/<execution_id>/<checkpoint_id>.json

    Writes use temp file + rename so a crash never leaves a partial file.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._dir = directory or StateConfig.get_checkpoints_dir()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> FileCheckpointStore:
        """Store rooted at ``<state_dir>/checkpoints`` of the given settings."""
        return cls(StateConfig.get_checkpoints_dir(settings.state_dir))

    @property
    def directory(self) -> Path:
        return self._dir

    def _path_for(self, checkpoint: Checkpoint) -> Path:
        return self._dir / checkpoint.execution_id / f"{checkpoint.id}.json"

    def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        path = self._path_for(checkpoint)
        payload = json.dumps(checkpoint.model_dump(mode="json"), indent=2, ensure_ascii=False)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        logger.debug(f"Checkpoint written: {path}")
        return checkpoint.id

    def _read(self, path: Path) -> Checkpoint | None:
        try:
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Skipping unreadable checkpoint file {path}: {e}")
            return None

    def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        with self._lock:
            matches = list(self._dir.glob(f"*/{checkpoint_id}.json"))
            return self._read(matches[0]) if matches else None

    def list_checkpoints(self, execution_id: str | None = None) -> list[Checkpoint]:
        pattern = f"{execution_id}/*.json" if execution_id is not None else "*/*.json"
        with self._lock:
            loaded = [self._read(path) for path in self._dir.glob(pattern)]
        return sorted((c for c in loaded if c is not None), key=lambda c: c.created_at)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        with self._lock:
            matches = list(self._dir.glob(f"*/{checkpoint_id}.json"))
            for path in matches:
                path.unlink(missing_ok=True)
            return bool(matches)


__all__ = ["CheckpointStore", "FileCheckpointStore", "InMemoryCheckpointStore"]

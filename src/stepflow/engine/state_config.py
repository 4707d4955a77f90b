"""State directory configuration for the file-backed stores.

Each project (working directory) gets its own state directory, isolated by a
hash of the CWD, unless ``EngineSettings.state_dir`` or STEPFLOW_STATE_DIR
points somewhere explicit:

    ~/.stepflow/
      states/
        <hash-of-cwd>/
          executions.db     # SQLite execution store
          checkpoints/      # JSON checkpoint files
            <execution_id>/
              <checkpoint_id>.json
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


class StateConfig:
    """Resolves and creates the state directories used by stepflow stores."""

    ENV_VAR = "STEPFLOW_STATE_DIR"

    @staticmethod
    def get_state_dir(state_dir: Path | None = None) -> Path:
        """
        Get the state directory for the current working directory.

        Args:
            state_dir: Explicit directory (takes precedence over the environment)

        Returns:
            ``state_dir``, ``$STEPFLOW_STATE_DIR`` if set, otherwise
            ``~/.stepflow/states/<sha256(cwd)[:16]>/`` (created if missing)
        """
        override = state_dir or os.getenv(StateConfig.ENV_VAR)
        if override:
            resolved = Path(override).expanduser()
        else:
            cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
            resolved = Path.home() / ".stepflow" / "states" / cwd_hash

        resolved.mkdir(parents=True, exist_ok=True)
        return resolved

    @staticmethod
    def get_checkpoints_dir(state_dir: Path | None = None) -> Path:
        checkpoints_dir = StateConfig.get_state_dir(state_dir) / "checkpoints"
        checkpoints_dir.mkdir(parents=True, exist_ok=True)
        return checkpoints_dir

    @staticmethod
    def get_db_path(state_dir: Path | None = None) -> Path:
        return StateConfig.get_state_dir(state_dir) / "executions.db"


__all__ = ["StateConfig"]

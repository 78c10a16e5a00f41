"""File-backed store for observed server state.

One JSON document per managed server, named after its configuration.
Writes go to a temporary file that replaces the target, so a crash
never leaves a truncated state behind.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import ServerState

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when stored state cannot be read or written."""

    pass


class StateStore:
    """Observed state persisted as JSON files in a directory."""

    def __init__(self, state_dir: Path) -> None:
        self._dir = state_dir

    def path(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    def names(self) -> list[str]:
        """Names with stored state, sorted."""
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json") if p.is_file())

    def load(self, name: str) -> ServerState | None:
        """Load stored state, or None if nothing is stored.

        Raises:
            StateStoreError: If the file is too large, unreadable or invalid.
        """
        state_path = self.path(name)
        if not state_path.exists():
            return None

        try:
            file_size = state_path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {state_path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {state_path}"
            )

        try:
            content = state_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {state_path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in {state_path}: {e}") from e

        try:
            return ServerState.model_validate(data)
        except ValidationError as e:
            raise StateStoreError(f"Invalid state in {state_path}: {e}") from e

    def save(self, name: str, state: ServerState) -> Path:
        """Replace the stored state for a name.

        Raises:
            StateStoreError: If the file cannot be written.
        """
        state_path = self.path(name)
        tmp_path = state_path.with_suffix(".json.tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, state_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {state_path}: {e}") from e

        logger.info("State saved", extra={"server": name, "server_id": state.id})
        return state_path

    def delete(self, name: str) -> bool:
        """Remove stored state. Returns False if nothing was stored.

        Raises:
            StateStoreError: If the file exists but cannot be removed.
        """
        state_path = self.path(name)
        try:
            state_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateStoreError(f"Failed to delete state file {state_path}: {e}") from e
        logger.info("State deleted", extra={"server": name})
        return True

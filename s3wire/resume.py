"""On-disk persistence of transfer state.

Each transfer is stored as one JSON file, keyed by a stable hash of
(bucket, key, local path, direction), in a well-known directory:

1. The directory passed to ResumeStore
2. $S3WIRE_RESUME_DIR
3. ~/.s3wire/resume
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from s3wire.models import TransferDirection
from s3wire.state import TransferState

logger = logging.getLogger(__name__)

RESUME_DIR_ENV = "S3WIRE_RESUME_DIR"
RESUME_SUFFIX = ".s3wire-resume"
DEFAULT_CLEANUP_DAYS = 7

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def default_resume_dir() -> Path:
    """Resume directory from the environment, or the per-user default."""
    env_dir = os.environ.get(RESUME_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".s3wire" / "resume"


def _safe(value: str, limit: int = 40) -> str:
    return _UNSAFE_CHARS.sub("_", value).strip("_")[:limit] or "_"


def resume_file_name(
    bucket: str,
    key: str,
    local_path: str,
    direction: TransferDirection,
) -> str:
    """Stable file name for a (bucket, key, local path, direction) tuple."""
    abspath = os.path.abspath(local_path)
    digest = hashlib.sha256(
        "|".join([bucket, key, abspath, direction.value]).encode("utf-8")
    ).hexdigest()[:16]
    key_name = key.rstrip("/").rsplit("/", 1)[-1]
    return f"{_safe(bucket)}_{_safe(key_name)}_{direction.value}_{digest}{RESUME_SUFFIX}"


class ResumeStore:
    """Saves, loads and deletes TransferState records."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory else default_resume_dir()

    def path_for(
        self,
        bucket: str,
        key: str,
        local_path: str,
        direction: TransferDirection,
    ) -> Path:
        return self.directory / resume_file_name(bucket, key, local_path, direction)

    def _state_path(self, state: TransferState) -> Path:
        return self.path_for(state.bucket, state.key, state.local_path, state.direction)

    def save(self, state: TransferState) -> Path:
        """Write the state atomically.

        Returns:
            Path of the resume file.

        Raises:
            OSError: If the directory or file cannot be written.
        """
        path = self._state_path(state)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return path

    def load(
        self,
        bucket: str,
        key: str,
        local_path: str,
        direction: TransferDirection,
    ) -> Optional[TransferState]:
        """Load stored state for a transfer.

        Returns:
            The stored state, or None if there is none or it is unreadable.
        """
        path = self.path_for(bucket, key, local_path, direction)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            state = TransferState.from_dict(data)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable resume file %s: %s", path, e)
            return None

        if (state.bucket, state.key, state.direction) != (bucket, key, direction):
            logger.warning("Ignoring resume file %s: it describes another transfer", path)
            return None
        return state

    def delete(self, state: TransferState) -> bool:
        """Remove the resume file for a state.

        Returns:
            True if a file was removed.
        """
        path = self._state_path(state)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_files(self) -> list[Path]:
        """All resume files in the store, oldest first."""
        if not self.directory.is_dir():
            return []
        files = [p for p in self.directory.iterdir() if p.name.endswith(RESUME_SUFFIX)]
        return sorted(files, key=lambda p: p.stat().st_mtime)

    def cleanup(self, older_than_days: float = DEFAULT_CLEANUP_DAYS) -> int:
        """Delete resume files not modified for ``older_than_days`` days.

        Returns:
            Number of files deleted.
        """
        cutoff = time.time() - older_than_days * 86400
        removed = 0
        for path in self.list_files():
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Removed %d stale resume file(s) from %s", removed, self.directory)
        return removed

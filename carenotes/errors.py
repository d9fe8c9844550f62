"""
Error types and error logging for carenotes.

Failures affecting a single unit of work (one row, one sync attempt) are
contained by the component that owns them. The exceptions below mark the
boundaries where that happens.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class CareNotesError(Exception):
    """Base class for carenotes errors."""


class StorageError(CareNotesError):
    """Schema or constraint violation, or disk I/O failure in the local store."""


class SyncError(CareNotesError):
    """Network, auth or remote failure during replication."""


class EmbeddingError(CareNotesError):
    """Model load or inference failure."""


class IndexingRowError(CareNotesError):
    """Failure embedding or writing back a single row."""

    def __init__(self, table: str, row_id: str, reason: str):
        super().__init__(f"{table}/{row_id}: {reason}")
        self.table = table
        self.row_id = row_id
        self.reason = reason


def _error_log_path() -> Path:
    """Resolve error log path, respecting CARENOTES_STORE_PATH."""
    store = os.environ.get("CARENOTES_STORE_PATH")
    if store:
        return Path(store) / "carenotes-errors.log"
    return Path.home() / ".carenotes" / "carenotes-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Never crash while reporting a crash
    return log_path

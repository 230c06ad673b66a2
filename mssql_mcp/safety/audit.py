"""Append-only operation log.

Every attempted destructive operation, previewed or executed, is written as
one JSON line to ``<log_dir>/operations.log``. Writing is best effort: a
failure is reported on the diagnostic logger and never reaches the caller.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .models import AuditRecord

logger = structlog.get_logger(__name__)

DEFAULT_LOG_DIR = "./logs"
LOG_FILE_NAME = "operations.log"


class AuditLog:
    """Serialises audit records into a line-delimited JSON file."""

    def __init__(self, log_dir: Optional[Union[str, Path]] = None):
        """Initialize the audit log.

        Args:
            log_dir: Target directory, defaults to OPERATION_LOG_DIR or ./logs
        """
        self.log_dir = Path(log_dir or os.getenv("OPERATION_LOG_DIR", DEFAULT_LOG_DIR))
        self.log_file = self.log_dir / LOG_FILE_NAME
        self.logger = structlog.get_logger(self.__class__.__name__)
        self._lock = threading.Lock()

    def record(self, entry: AuditRecord) -> None:
        """Append a record. Failures are logged and swallowed."""
        try:
            line = json.dumps(entry.model_dump(mode="json", exclude_none=True)) + "\n"
            with self._lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with self.log_file.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(
                "Failed to write operation log",
                log_file=str(self.log_file),
                operation_type=entry.operation_type,
                error=str(e),
            )

    def get_history(
        self,
        limit: int = 50,
        operation_filter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get the most recent records, newest first.

        Args:
            limit: Maximum number of records to return
            operation_filter: Only include this operation type

        Returns:
            List of record dictionaries
        """
        if limit <= 0:
            return []

        with self._lock:
            if not self.log_file.exists():
                return []
            lines = self.log_file.read_text(encoding="utf-8").splitlines()

        records = []
        for line in reversed(lines):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self.logger.warning("Skipping malformed operation log line")
                continue
            if operation_filter and record.get("operation_type") != operation_filter.upper():
                continue
            records.append(record)
            if len(records) >= limit:
                break

        return records

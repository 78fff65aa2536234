"""
Checkpoint store for the agricultural sensor quality pipeline.

Records which raw files have been fully processed so re-runs skip them. The
store is an append-only JSON-lines file: every record is one line written and
fsynced under a lock, and the last record for a file wins. A line torn by a
crash mid-append is skipped on load.
"""

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from agri_pipeline.config import PipelineConfig
from agri_pipeline.models import CheckpointRecord, CheckpointSummary
from agri_pipeline.utils import get_logger, PersistenceError


class CheckpointStore:
    """Durable record of processed source files."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize checkpoint store.

        Args:
            config: Pipeline configuration holding the checkpoint file location
        """
        self.config = config
        self.logger = get_logger(__name__)
        self.checkpoint_path = Path(config.checkpoint.checkpoint_file)
        self.verify_fingerprint = config.checkpoint.verify_fingerprint
        self._lock = threading.Lock()

    def is_processed(self, file_id: str, fingerprint: Optional[Dict[str, Any]] = None) -> bool:
        """
        Whether a file has a checkpoint.

        Args:
            file_id: Raw file name
            fingerprint: Current size/mtime/hash of the file; a checkpoint taken
                for different content does not count

        Returns:
            True if the file can be skipped
        """
        record = self._load().get(file_id)
        if record is None:
            return False
        if self.verify_fingerprint and not record.matches(fingerprint):
            self.logger.info(f"{file_id} changed since it was checkpointed, reprocessing")
            return False
        return True

    def mark_processed(self, file_id: str, metadata: Optional[Dict[str, Any]] = None) -> CheckpointRecord:
        """
        Append a checkpoint for a file whose output is already persisted.

        Args:
            file_id: Raw file name
            metadata: Fingerprint fields and ``record_count``

        Returns:
            The record written

        Raises:
            PersistenceError: If the record cannot be durably written
        """
        metadata = metadata or {}
        record = CheckpointRecord(
            file_identifier=file_id,
            size_bytes=metadata.get("size_bytes"),
            mtime=metadata.get("mtime"),
            content_hash=metadata.get("content_hash"),
            record_count=metadata.get("record_count", 0),
            processed_at=datetime.now(timezone.utc)
        )
        line = record.model_dump_json() + "\n"

        with self._lock:
            try:
                self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
                if self._ends_mid_line():
                    line = "\n" + line
                with open(self.checkpoint_path, 'a') as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(f"Failed to write checkpoint for {file_id}: {e}") from e

        self.logger.debug(f"Checkpointed {file_id} ({record.record_count} records)")
        return record

    def list_processed(self) -> List[CheckpointRecord]:
        """Latest checkpoint per file, ordered by ``processed_at``."""
        return sorted(self._load().values(), key=lambda r: r.processed_at)

    def summary(self) -> CheckpointSummary:
        """Processed file names, their count and the latest checkpoint time."""
        records = self.list_processed()
        return CheckpointSummary(
            processed_files=[r.file_identifier for r in records],
            total_processed=len(records),
            last_timestamp=records[-1].processed_at if records else None
        )

    def clear(self) -> None:
        """Delete every checkpoint. Persisted output is left untouched."""
        with self._lock:
            if self.checkpoint_path.exists():
                self.checkpoint_path.unlink()
                self.logger.info(f"Cleared checkpoints: {self.checkpoint_path}")

    def _ends_mid_line(self) -> bool:
        if not self.checkpoint_path.exists() or self.checkpoint_path.stat().st_size == 0:
            return False
        with open(self.checkpoint_path, 'rb') as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"

    def _load(self) -> Dict[str, CheckpointRecord]:
        """
        Read all records, keeping the last one per file.

        Raises:
            PersistenceError: If the checkpoint file exists but cannot be read
        """
        with self._lock:
            if not self.checkpoint_path.exists():
                return {}
            try:
                with open(self.checkpoint_path, 'r') as f:
                    lines = f.read().splitlines()
            except OSError as e:
                raise PersistenceError(f"Failed to read checkpoints: {e}") from e

        records: Dict[str, CheckpointRecord] = {}
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = CheckpointRecord.model_validate(json.loads(line))
            except (ValueError, PydanticValidationError) as e:
                self.logger.warning(f"Skipping unreadable checkpoint line {number}: {e}")
                continue
            records[record.file_identifier] = record

        return records

"""
Data ingestion component for the agricultural sensor quality pipeline.

Discovers raw Parquet files, validates their schema with DuckDB without a full
scan, and normalizes the readings (types, identifiers, timestamps, duplicates)
before calibration.
"""

import hashlib
import threading
from pathlib import Path
from typing import Any, Dict, List

import duckdb
import numpy as np
import pandas as pd

from agri_pipeline.components.base import IngestionComponent
from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import get_logger, ConfigurationError, FileValidationError


NUMERIC_TYPES = {
    "DOUBLE", "FLOAT", "REAL", "TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT",
    "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT"
}

KEY_COLUMNS = ["sensor_id", "timestamp", "reading_type"]


def _type_family(duckdb_type: str) -> str:
    """Collapse a DuckDB type name into the family used for schema checks."""
    t = duckdb_type.upper()
    if t in NUMERIC_TYPES or t.startswith("DECIMAL"):
        return "numeric"
    if t.startswith("TIMESTAMP"):
        return "timestamp"
    if t == "VARCHAR":
        return "string"
    return t


class ParquetIngestionComponent(IngestionComponent):
    """Reads, validates and normalizes one raw Parquet file at a time."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize ingestion component.

        Args:
            config: Pipeline configuration
        """
        super().__init__(config)
        self.logger = get_logger(__name__)
        self.duckdb_conn = duckdb.connect(':memory:')
        self._stats_lock = threading.Lock()

        self.stats = {
            "files_validated": 0,
            "files_rejected": 0,
            "records_read": 0,
            "records_dropped": 0,
            "duplicates_removed": 0
        }

    def discover_files(self) -> List[Path]:
        """
        List raw Parquet files in name order.

        Raises:
            ConfigurationError: If the raw data directory does not exist
        """
        raw_data_path = Path(self.config.paths.data_raw)

        if not raw_data_path.exists():
            raise ConfigurationError(f"Raw data directory does not exist: {raw_data_path}")

        files = sorted(raw_data_path.glob("*.parquet"))
        if not files:
            self.logger.warning(f"No parquet files found in {raw_data_path}")
        return files

    def fingerprint(self, file_path: Path) -> Dict[str, Any]:
        """Size, mtime and sha256 of a raw file, used to key checkpoints."""
        stat = file_path.stat()
        digest = hashlib.sha256()
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b''):
                digest.update(chunk)
        return {
            "size_bytes": stat.st_size,
            "mtime": stat.st_mtime,
            "content_hash": digest.hexdigest()
        }

    def execute(self, file_path: Path) -> pd.DataFrame:
        """
        Validate and normalize a single raw file.

        Args:
            file_path: Path to the Parquet file

        Returns:
            Normalized readings

        Raises:
            FileValidationError: If the file is unreadable, mismatches the schema or has no usable rows
        """
        file_path = Path(file_path)
        self.logger.info(f"Ingesting {file_path.name}")

        raw = self.validate(file_path)
        normalized = self.normalize(raw, file_path.name)

        self.logger.info(f"Ingested {file_path.name}: {len(normalized)} normalized records")
        return normalized

    def validate(self, file_path: Path) -> pd.DataFrame:
        """
        Check column presence and types with DuckDB, then load the file.

        Returns:
            Raw data restricted to the expected columns
        """
        cursor = self.duckdb_conn.cursor()
        try:
            try:
                rel = cursor.read_parquet(file_path.as_posix())
                actual_cols = list(rel.columns)
                actual_types = [str(t).upper() for t in rel.types]
            except (duckdb.Error, OSError) as e:
                self._count("files_rejected")
                raise FileValidationError(f"{file_path.name} is not a readable parquet file: {e}") from e

            actual_type_map = dict(zip(actual_cols, actual_types))
            expected_cols = list(self.config.data_schema.expected_columns)
            expected_type_map = {k: v.upper() for k, v in self.config.data_schema.types.items()}

            missing = [c for c in expected_cols if c not in actual_cols]
            if missing:
                self._count("files_rejected")
                raise FileValidationError(f"{file_path.name} schema mismatch. Missing columns: {missing}")

            extra = [c for c in actual_cols if c not in expected_cols]
            if extra:
                self.logger.warning(f"{file_path.name} has extra columns that will be dropped: {extra}")

            type_mismatches = {
                c: {"expected": expected_type_map[c], "actual": actual_type_map[c]}
                for c in expected_cols
                if _type_family(expected_type_map[c]) != _type_family(actual_type_map[c])
            }
            if type_mismatches:
                self._count("files_rejected")
                raise FileValidationError(f"{file_path.name} type mismatches: {type_mismatches}")

            try:
                df = rel.df()
            except duckdb.Error as e:
                self._count("files_rejected")
                raise FileValidationError(f"{file_path.name} could not be loaded: {e}") from e
        finally:
            cursor.close()

        if df.empty:
            self._count("files_rejected")
            raise FileValidationError(f"{file_path.name} is empty")

        self._count("files_validated")
        self._count("records_read", len(df))
        return df[expected_cols]

    def normalize(self, data: pd.DataFrame, source: str = "") -> pd.DataFrame:
        """
        Normalize identifiers, timestamps and numeric columns.

        Args:
            data: Raw data with the expected columns
            source: File name used in log messages

        Returns:
            Normalized readings sorted by sensor and time, with ``value`` renamed to ``raw_value``
        """
        df = data.copy()

        df['sensor_id'] = df['sensor_id'].astype('string').str.strip().replace('', pd.NA)
        df['reading_type'] = df['reading_type'].astype('string').str.strip().str.lower().replace('', pd.NA)
        df['timestamp'] = pd.to_datetime(df['timestamp'], errors='coerce', utc=True)

        for col in ('value', 'battery_level'):
            df[col] = pd.to_numeric(df[col], errors='coerce').astype('float64')
            df[col] = df[col].replace([np.inf, -np.inf], np.nan)

        before = len(df)
        df = df.dropna(subset=KEY_COLUMNS)
        dropped = before - len(df)
        if dropped:
            self.logger.warning(f"   {source}: dropped {dropped} records missing sensor_id, timestamp or reading_type")
            self._count("records_dropped", dropped)

        before = len(df)
        df = df.drop_duplicates(subset=KEY_COLUMNS, keep='first')
        duplicates = before - len(df)
        if duplicates:
            self.logger.info(f"   {source}: removed {duplicates} duplicate records")
            self._count("duplicates_removed", duplicates)

        if df.empty:
            raise FileValidationError(f"{source} has no usable readings after normalization")

        df['sensor_id'] = df['sensor_id'].astype(str)
        df['reading_type'] = df['reading_type'].astype(str)
        df = df.rename(columns={'value': 'raw_value'})

        return df.sort_values(KEY_COLUMNS, kind='mergesort').reset_index(drop=True)

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    def log_summary(self) -> None:
        """Log ingestion statistics."""
        self.logger.info("=== Ingestion Summary ===")
        for key, value in self.stats.items():
            self.logger.info(f"{key.replace('_', ' ').title()}: {value}")

        total = self.stats["files_validated"] + self.stats["files_rejected"]
        if total > 0:
            success_rate = (self.stats["files_validated"] / total) * 100
            self.logger.info(f"Success Rate: {success_rate:.1f}%")

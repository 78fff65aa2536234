"""
Data loading component for the agricultural sensor quality pipeline.

Stores processed readings as a hive-partitioned Parquet dataset. Every source
file owns the output files named after it, and each write replaces those
files wholesale, so reprocessing a file never duplicates its readings.
"""

import re
import threading
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds

from agri_pipeline.components.base import LoadingComponent
from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import get_logger, PersistenceError


class ParquetLoadingComponent(LoadingComponent):
    """Writes one source file's processed readings into the partitioned dataset."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize loading component.

        Args:
            config: Pipeline configuration
        """
        super().__init__(config)
        self.logger = get_logger(__name__)

        self.output_path = Path(self.config.paths.data_processed)
        self.compression = self.config.write.compression
        self.partition_columns = list(self.config.write.partition_by)
        self._stats_lock = threading.Lock()

        self.stats = {
            "records_stored": 0,
            "files_written": 0,
            "files_replaced": 0,
            "storage_size_bytes": 0
        }

    def execute(self, processed: pd.DataFrame, source_file: str) -> int:
        """
        Replace the stored output of a source file.

        Args:
            processed: Fully processed readings
            source_file: Raw file the readings came from

        Returns:
            Number of records written

        Raises:
            PersistenceError: If the dataset cannot be written
        """
        stem = Path(source_file).stem
        prepared = self._prepare_data_for_storage(processed, source_file)

        try:
            self.output_path.mkdir(parents=True, exist_ok=True)
            replaced = self.remove_source_output(source_file)

            if prepared.empty:
                self.logger.warning(f"No data to store for {source_file}")
                return 0

            table = pa.Table.from_pandas(prepared, preserve_index=False)
            partitioning = ds.partitioning(
                pa.schema([(col, pa.string()) for col in self.partition_columns]),
                flavor="hive"
            )

            ds.write_dataset(
                table,
                base_dir=self.output_path,
                partitioning=partitioning,
                format="parquet",
                basename_template=f"{stem}-{{i}}.parquet",
                existing_data_behavior="overwrite_or_ignore",
                file_options=ds.ParquetFileFormat().make_write_options(
                    compression=self.compression,
                    use_dictionary=True
                )
            )
        except (OSError, pa.ArrowException) as e:
            raise PersistenceError(f"Failed to store processed data for {source_file}: {e}") from e

        written = self._source_files(stem)
        with self._stats_lock:
            self.stats["records_stored"] += len(prepared)
            self.stats["files_written"] += len(written)
            self.stats["files_replaced"] += replaced

        self.logger.info(f"Stored {len(prepared)} records from {source_file} in {len(written)} partition files")
        return len(prepared)

    def _prepare_data_for_storage(self, data: pd.DataFrame, source_file: str) -> pd.DataFrame:
        """Add partition and lineage columns."""
        prepared = data.copy()

        prepared['date'] = prepared['timestamp'].dt.strftime('%Y-%m-%d')
        for col in ('sensor_id', 'reading_type'):
            prepared[col] = prepared[col].astype(str)

        prepared['source_file'] = source_file
        prepared['pipeline_version'] = self.config.pipeline.version

        for col in ('calibration_applied', 'has_missing_value', 'is_range_anomaly',
                    'is_statistical_outlier', 'is_temporal_anomaly', 'anomalous_reading'):
            if col in prepared.columns:
                prepared[col] = prepared[col].astype('bool')

        return prepared

    def _source_files(self, stem: str) -> List[Path]:
        pattern = re.compile(rf"^{re.escape(stem)}-\d+\.parquet$")
        if not self.output_path.exists():
            return []
        return [p for p in self.output_path.rglob("*.parquet") if pattern.match(p.name)]

    def remove_source_output(self, source_file: str) -> int:
        """Delete every partition file written for a source file."""
        removed = 0
        for path in self._source_files(Path(source_file).stem):
            path.unlink()
            removed += 1
        if removed:
            self.logger.info(f"   Replaced {removed} existing partition files for {source_file}")
        return removed

    def _storage_size(self) -> int:
        return sum(p.stat().st_size for p in self.output_path.rglob("*.parquet"))

    def get_storage_summary(self) -> Dict[str, Any]:
        """
        Describe the stored dataset.

        Returns:
            Dictionary with location, compression, partitioning and per-partition file counts
        """
        self.stats["storage_size_bytes"] = self._storage_size()
        partitions = []
        self._collect_partition_info_recursive(self.output_path, self.partition_columns, {}, partitions)
        return {
            "storage_path": str(self.output_path),
            "compression": self.compression,
            "partition_columns": self.partition_columns,
            "storage_stats": self.stats.copy(),
            "partitions": partitions
        }

    def _collect_partition_info_recursive(self, current_path: Path, remaining_columns: list,
                                          current_partition: dict, partitions_list: list) -> None:
        if not remaining_columns:
            parquet_files = list(current_path.glob("*.parquet"))
            if parquet_files:
                current_partition["files"] = len(parquet_files)
                current_partition["size_bytes"] = sum(f.stat().st_size for f in parquet_files)
                partitions_list.append(current_partition.copy())
            return

        partition_col = remaining_columns[0]
        for partition_dir in sorted(current_path.glob(f"{partition_col}=*")):
            if partition_dir.is_dir():
                current_partition[partition_col] = partition_dir.name.split("=", 1)[1]
                self._collect_partition_info_recursive(
                    partition_dir, remaining_columns[1:], current_partition, partitions_list
                )

    def log_summary(self) -> None:
        """Log loading statistics."""
        self.stats["storage_size_bytes"] = self._storage_size()
        self.logger.info("=== Loading Summary ===")
        for key, value in self.stats.items():
            if key == "storage_size_bytes":
                if value > 1024 * 1024:
                    self.logger.info(f"Storage Size: {value / (1024 * 1024):.2f} MB")
                elif value > 1024:
                    self.logger.info(f"Storage Size: {value / 1024:.2f} KB")
                else:
                    self.logger.info(f"Storage Size: {value} bytes")
            else:
                self.logger.info(f"{key.replace('_', ' ').title()}: {value}")

        self.logger.info(f"Output Location: {self.output_path}")
        self.logger.info(f"Compression: {self.compression}")
        self.logger.info(f"Partitioned By: {', '.join(self.partition_columns)}")

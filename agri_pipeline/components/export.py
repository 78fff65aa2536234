"""
Export of processed readings to JSON, CSV or Parquet.

Exports read through the query store, keep every derived field, and can be
compressed and split into ``date=``/``sensor_id=`` partitions.
"""

import gzip
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds
import pyarrow.parquet as pq

from agri_pipeline.components.query import ProcessedDataStore
from agri_pipeline.config import PipelineConfig
from agri_pipeline.models import ExportResult
from agri_pipeline.utils import get_logger, ExportError


EXPORT_FORMATS = ("json", "csv", "parquet")
EXPORT_COMPRESSIONS = ("none", "gzip", "snappy")
EXPORT_PARTITIONS = {
    "none": [],
    "date": ["date"],
    "sensor_id": ["sensor_id"],
    "both": ["date", "sensor_id"]
}
FILTER_KEYS = ("sensor_id", "reading_type", "date_from", "date_to")


def validate_export_options(format: str, compression: str, partition_by: str) -> None:
    """
    Reject unsupported export option combinations.

    Raises:
        ExportError: If an option is unknown or snappy is requested for a text format
    """
    if format not in EXPORT_FORMATS:
        raise ExportError(f"Unsupported export format '{format}', expected one of {list(EXPORT_FORMATS)}")
    if compression not in EXPORT_COMPRESSIONS:
        raise ExportError(f"Unsupported compression '{compression}', expected one of {list(EXPORT_COMPRESSIONS)}")
    if compression == "snappy" and format != "parquet":
        raise ExportError(f"snappy compression is only available for parquet exports, not {format}")
    if partition_by not in EXPORT_PARTITIONS:
        raise ExportError(f"Unsupported partitioning '{partition_by}', expected one of {list(EXPORT_PARTITIONS)}")


def _json_ready(data: pd.DataFrame) -> pd.DataFrame:
    """Timestamps as ISO strings and missing values as None."""
    ready = data.copy()
    for col in ready.columns:
        if pd.api.types.is_datetime64_any_dtype(ready[col]):
            ready[col] = ready[col].map(lambda t: t.isoformat() if pd.notna(t) else None)
    return ready.astype(object).where(ready.notna(), None)


class DataExporter:
    """Writes filtered processed readings under ``paths.exports_dir``."""

    def __init__(self, config: PipelineConfig, store: Optional[ProcessedDataStore] = None):
        """
        Initialize exporter.

        Args:
            config: Pipeline configuration
            store: Query store to read from; one is created if omitted
        """
        self.config = config
        self.logger = get_logger(__name__)
        self.store = store or ProcessedDataStore(config)
        self.exports_dir = Path(config.paths.exports_dir)

    def export(self, filters: Optional[Dict[str, Any]] = None, format: str = "json",
               compression: str = "none", partition_by: str = "none",
               columnar: bool = False) -> ExportResult:
        """
        Export readings matching the filters.

        Args:
            filters: Any of ``sensor_id``, ``reading_type``, ``date_from``, ``date_to``
            format: json, csv or parquet
            compression: none, gzip or snappy (parquet only)
            partition_by: none, date, sensor_id or both
            columnar: Column-oriented JSON layout

        Returns:
            Description of what was written

        Raises:
            ExportError: If the options are invalid or the export cannot be written
        """
        validate_export_options(format, compression, partition_by)

        filters = filters or {}
        unknown = [k for k in filters if k not in FILTER_KEYS]
        if unknown:
            raise ExportError(f"Unsupported export filters: {unknown}")

        data = self.store.query(limit=None, **filters)
        if not data.empty and 'date' not in data.columns:
            data['date'] = data['timestamp'].dt.strftime('%Y-%m-%d')

        stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')
        name = f"sensor_data_{stamp}_{format}"

        try:
            self.exports_dir.mkdir(parents=True, exist_ok=True)
            if format == "json" and columnar and partition_by != "none":
                files = [self._write_json(data, self.exports_dir / name, compression, columnar, partition_by)]
                path = files[0]
            elif partition_by == "none":
                files = [self._write_single(data, self.exports_dir / name, format, compression, columnar)]
                path = files[0]
            else:
                path = self.exports_dir / name
                files = self._write_partitioned(data, path, format, compression, columnar, partition_by)
        except (OSError, pa.ArrowException) as e:
            raise ExportError(f"Failed to write {format} export: {e}") from e

        result = ExportResult(
            path=str(path),
            files=[str(f) for f in files],
            record_count=len(data),
            size_bytes=sum(Path(f).stat().st_size for f in files),
            format=format,
            compression=compression,
            partition_by=partition_by,
            columnar=columnar
        )
        self.logger.info(
            f"Exported {result.record_count} records as {format} "
            f"(compression={compression}, partition_by={partition_by}) to {result.path}"
        )
        return result

    def _write_single(self, data: pd.DataFrame, base: Path, format: str,
                      compression: str, columnar: bool) -> Path:
        if format == "json":
            return self._write_json(data, base, compression, columnar, "none")
        if format == "csv":
            return self._write_csv(data, base, compression)
        return self._write_parquet(data, base, compression)

    def _write_partitioned(self, data: pd.DataFrame, base_dir: Path, format: str,
                           compression: str, columnar: bool, partition_by: str) -> List[Path]:
        columns = EXPORT_PARTITIONS[partition_by]
        base_dir.mkdir(parents=True, exist_ok=True)
        if data.empty:
            return []

        if format == "parquet":
            table = pa.Table.from_pandas(data, preserve_index=False)
            ds.write_dataset(
                table,
                base_dir=base_dir,
                partitioning=ds.partitioning(
                    pa.schema([(col, table.schema.field(col).type) for col in columns]),
                    flavor="hive"
                ),
                format="parquet",
                existing_data_behavior="overwrite_or_ignore",
                file_options=ds.ParquetFileFormat().make_write_options(compression=compression)
            )
            return sorted(base_dir.rglob("*.parquet"))

        files = []
        for keys, group in data.groupby(columns, sort=True):
            keys = keys if isinstance(keys, tuple) else (keys,)
            partition_dir = base_dir.joinpath(*[f"{col}={value}" for col, value in zip(columns, keys)])
            partition_dir.mkdir(parents=True, exist_ok=True)
            if format == "json":
                files.append(self._write_json(group, partition_dir / "data", compression, columnar, "none"))
            else:
                files.append(self._write_csv(group, partition_dir / "data", compression))
        return files

    def _write_json(self, data: pd.DataFrame, base: Path, compression: str,
                    columnar: bool, partition_by: str) -> Path:
        ready = _json_ready(data)

        if columnar and partition_by != "none":
            columns = EXPORT_PARTITIONS[partition_by]
            partitions = {}
            groups = ready.groupby(columns, sort=True) if not ready.empty else []
            for keys, group in groups:
                keys = keys if isinstance(keys, tuple) else (keys,)
                partitions["_".join(str(k) for k in keys)] = group.to_dict(orient='list')
            payload = {"format": "columnar", "partitioning": partition_by, "partitions": partitions}
        elif columnar:
            payload = {"format": "columnar", "partitioning": "none", "columns": ready.to_dict(orient='list')}
        else:
            payload = {
                "format": "row-based",
                "data": ready.to_dict(orient='records'),
                "metadata": {
                    "record_count": len(ready),
                    "exported_at": datetime.now(timezone.utc).isoformat(),
                    "partitioning": partition_by
                }
            }

        content = json.dumps(payload, indent=2, default=str)
        if compression == "gzip":
            path = base.with_name(base.name + ".json.gz")
            with gzip.open(path, 'wt', encoding='utf-8') as f:
                f.write(content)
        else:
            path = base.with_name(base.name + ".json")
            path.write_text(content, encoding='utf-8')
        return path

    def _write_csv(self, data: pd.DataFrame, base: Path, compression: str) -> Path:
        if compression == "gzip":
            path = base.with_name(base.name + ".csv.gz")
            data.to_csv(path, index=False, compression="gzip")
        else:
            path = base.with_name(base.name + ".csv")
            data.to_csv(path, index=False)
        return path

    def _write_parquet(self, data: pd.DataFrame, base: Path, compression: str) -> Path:
        path = base.with_name(base.name + ".parquet")
        table = pa.Table.from_pandas(data, preserve_index=False)
        pq.write_table(table, path, compression=compression)
        return path

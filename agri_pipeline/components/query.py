"""
Read access to the processed dataset.

DuckDB scans the hive-partitioned Parquet output in place, so filtered reads,
summaries and distinct value lookups never load the whole dataset into pandas.
"""

import math
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import duckdb
import pandas as pd

from agri_pipeline.components.scoring import build_report
from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import get_logger, PipelineError


DateLike = Union[str, date, datetime]


def _as_date_string(value: DateLike) -> str:
    """Normalize a date filter to the ``YYYY-MM-DD`` form used by the date partition."""
    return pd.Timestamp(value).strftime('%Y-%m-%d')


def _utc_iso(value) -> str:
    ts = pd.Timestamp(value)
    ts = ts.tz_localize('UTC') if ts.tzinfo is None else ts.tz_convert('UTC')
    return ts.isoformat()


class ProcessedDataStore:
    """Filtered queries and summaries over the persisted readings."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize the store.

        Args:
            config: Pipeline configuration holding the processed data location
        """
        self.config = config
        self.logger = get_logger(__name__)
        self.data_path = Path(config.paths.data_processed)
        self.duckdb_conn = duckdb.connect(':memory:')

    def has_data(self) -> bool:
        """Whether any processed Parquet file exists."""
        return self.data_path.exists() and any(self.data_path.rglob("*.parquet"))

    def _source(self) -> str:
        pattern = (self.data_path / "**" / "*.parquet").as_posix().replace("'", "''")
        return (
            f"read_parquet('{pattern}', hive_partitioning = true, "
            f"hive_types_autocast = false, union_by_name = true)"
        )

    def _where(self, sensor_id: Optional[str] = None, reading_type: Optional[str] = None,
               date_from: Optional[DateLike] = None, date_to: Optional[DateLike] = None) -> Tuple[str, List[Any]]:
        """Build a parameterized WHERE clause. Date bounds are inclusive whole days."""
        clauses = []
        params: List[Any] = []

        if sensor_id:
            clauses.append("sensor_id = ?")
            params.append(sensor_id)
        if reading_type:
            clauses.append("reading_type = ?")
            params.append(reading_type)
        if date_from:
            clauses.append("date >= ?")
            params.append(_as_date_string(date_from))
        if date_to:
            clauses.append("date <= ?")
            params.append(_as_date_string(date_to))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def _execute(self, sql: str, params: List[Any]) -> pd.DataFrame:
        cursor = self.duckdb_conn.cursor()
        try:
            df = cursor.execute(sql, params).df()
        except duckdb.Error as e:
            raise PipelineError(f"Query over processed data failed: {e}") from e
        finally:
            cursor.close()

        if 'timestamp' in df.columns:
            df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
        return df

    def select(self, sql: str, sensor_id: Optional[str] = None, reading_type: Optional[str] = None,
               date_from: Optional[DateLike] = None, date_to: Optional[DateLike] = None) -> pd.DataFrame:
        """
        Run ``sql`` against the filtered readings, exposed as the ``readings`` relation.

        Returns:
            Query result, or an empty frame when nothing is stored
        """
        if not self.has_data():
            return pd.DataFrame()

        where, params = self._where(sensor_id, reading_type, date_from, date_to)
        return self._execute(f"WITH readings AS (SELECT * FROM {self._source()} {where}) {sql}", params)

    def query(self, sensor_id: Optional[str] = None, reading_type: Optional[str] = None,
              date_from: Optional[DateLike] = None, date_to: Optional[DateLike] = None,
              limit: Optional[int] = 100, offset: int = 0) -> pd.DataFrame:
        """
        Filtered readings, newest first.

        Args:
            sensor_id: Only this sensor
            reading_type: Only this reading type
            date_from: First day to include
            date_to: Last day to include
            limit: Page size, or None for every matching row
            offset: Rows to skip

        Returns:
            Matching readings with every derived field
        """
        if not self.has_data():
            return pd.DataFrame()

        where, params = self._where(sensor_id, reading_type, date_from, date_to)
        sql = f"SELECT * FROM {self._source()} {where} ORDER BY timestamp DESC, sensor_id, reading_type"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + [int(limit), int(offset)]
        elif offset:
            sql += " OFFSET ?"
            params = params + [int(offset)]

        return self._execute(sql, params)

    def count(self, sensor_id: Optional[str] = None, reading_type: Optional[str] = None,
              date_from: Optional[DateLike] = None, date_to: Optional[DateLike] = None) -> int:
        """Number of readings matching the filters."""
        if not self.has_data():
            return 0

        where, params = self._where(sensor_id, reading_type, date_from, date_to)
        result = self._execute(f"SELECT COUNT(*) AS n FROM {self._source()} {where}", params)
        return int(result['n'].iloc[0])

    def paginate(self, limit: int = 100, offset: int = 0, **filters) -> Dict[str, Any]:
        """A page of readings plus pagination metadata."""
        total = self.count(**filters)
        return {
            "data": self.query(limit=limit, offset=offset, **filters),
            "pagination": {
                "limit": limit,
                "offset": offset,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0
            }
        }

    def summary(self, sensor_id: Optional[str] = None, reading_type: Optional[str] = None,
                date_from: Optional[DateLike] = None, date_to: Optional[DateLike] = None) -> Dict[str, Any]:
        """
        Aggregate view of the stored readings.

        Returns:
            ``total_records``, ``quality_score``, ``quality_category``,
            ``total_issues`` (readings that are missing or anomalous), unique
            sensor and reading type counts, per-sensor and per-type breakdowns
            and the timestamp range
        """
        summary = {
            "total_records": 0,
            "quality_score": 0.0,
            "quality_category": self.config.scoring.no_data_category,
            "total_issues": 0,
            "unique_sensors": 0,
            "unique_reading_types": 0,
            "sensor_breakdown": {},
            "reading_type_breakdown": {},
            "timestamps": {"earliest": None, "latest": None}
        }
        if not self.has_data():
            return summary

        where, params = self._where(sensor_id, reading_type, date_from, date_to)
        source = self._source()

        totals = self._execute(f"""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CAST(has_missing_value AS INTEGER)), 0) AS missing,
                COALESCE(SUM(CAST(anomalous_reading AS INTEGER)), 0) AS anomaly,
                COALESCE(SUM(CAST(is_statistical_outlier AS INTEGER)), 0) AS outlier,
                COALESCE(SUM(CAST(is_temporal_anomaly AS INTEGER)), 0) AS temporal,
                COALESCE(SUM(CAST(has_missing_value OR anomalous_reading AS INTEGER)), 0) AS issues,
                COUNT(DISTINCT sensor_id) AS unique_sensors,
                COUNT(DISTINCT reading_type) AS unique_reading_types,
                MIN(timestamp) AS earliest,
                MAX(timestamp) AS latest
            FROM {source} {where}
        """, params).iloc[0]

        total = int(totals['total'])
        if total == 0:
            return summary

        report = build_report(
            source="store",
            total=total,
            missing=int(totals['missing']),
            anomaly=int(totals['anomaly']),
            outlier=int(totals['outlier']),
            temporal=int(totals['temporal']),
            settings=self.config.scoring
        )

        by_sensor = self._execute(
            f"SELECT sensor_id, COUNT(*) AS n FROM {source} {where} GROUP BY sensor_id ORDER BY sensor_id", params
        )
        by_type = self._execute(
            f"SELECT reading_type, COUNT(*) AS n FROM {source} {where} GROUP BY reading_type ORDER BY reading_type",
            params
        )

        summary.update({
            "total_records": total,
            "quality_score": report.quality_score,
            "quality_category": report.category,
            "total_issues": int(totals['issues']),
            "unique_sensors": int(totals['unique_sensors']),
            "unique_reading_types": int(totals['unique_reading_types']),
            "sensor_breakdown": {str(k): int(v) for k, v in zip(by_sensor["sensor_id"], by_sensor["n"])},
            "reading_type_breakdown": {str(k): int(v) for k, v in zip(by_type["reading_type"], by_type["n"])},
            "timestamps": {
                "earliest": _utc_iso(totals['earliest']),
                "latest": _utc_iso(totals['latest'])
            }
        })
        return summary

    def _distinct(self, column: str) -> List[str]:
        if not self.has_data():
            return []
        df = self._execute(
            f"SELECT DISTINCT {column} FROM {self._source()} WHERE {column} IS NOT NULL ORDER BY {column}", []
        )
        return [str(v) for v in df[column]]

    def sensor_ids(self) -> List[str]:
        """Distinct stored sensor ids, sorted."""
        return self._distinct("sensor_id")

    def reading_types(self) -> List[str]:
        """Distinct stored reading types, sorted."""
        return self._distinct("reading_type")

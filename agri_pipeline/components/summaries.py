"""
Summary tables and time gap analysis over the processed dataset.

Both read the hive-partitioned output through ``ProcessedDataStore`` and so
accept the same sensor, reading type and date filters as queries and exports.
Hours are UTC buckets of the reading timestamps.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from agri_pipeline.components.query import ProcessedDataStore
from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import get_logger, atomic_write_text, PersistenceError


SUMMARY_DIRNAME = "summary_tables"

# Lower bounds of each battery status, highest first. Anything below is Critical.
BATTERY_STATUS_BANDS = [(80, "High"), (50, "Medium"), (20, "Low")]

HOUR_BUCKET = "CAST(floor(epoch(timestamp) / 3600) AS BIGINT)"


def _battery_status_sql() -> str:
    cases = " ".join(f"WHEN AVG(battery_level) >= {bound} THEN '{name}'" for bound, name in BATTERY_STATUS_BANDS)
    return f"CASE WHEN AVG(battery_level) IS NULL THEN NULL {cases} ELSE 'Critical' END"


def _flag_stats(flag: str, prefix: str) -> str:
    return (
        f"COUNT(*) FILTER (WHERE {flag}) AS {prefix}_count, "
        f"CAST(COUNT(*) FILTER (WHERE {flag}) AS DOUBLE) * 100 / COUNT(*) AS {prefix}_percentage"
    )


SUMMARY_QUERIES = {
    "daily": f"""
        SELECT
            date, sensor_id, reading_type,
            COUNT(*) AS record_count,
            AVG(raw_value) AS avg_raw_value,
            AVG(calibrated_value) AS avg_value,
            MIN(calibrated_value) AS min_value,
            MAX(calibrated_value) AS max_value,
            STDDEV_SAMP(calibrated_value) AS std_value,
            {_flag_stats('anomalous_reading', 'anomaly')},
            {_flag_stats('is_statistical_outlier', 'outlier')},
            {_flag_stats('has_missing_value', 'missing')},
            AVG(battery_level) AS avg_battery_level,
            MIN(battery_level) AS min_battery_level,
            MAX(battery_level) AS max_battery_level,
            AVG(daily_average) AS avg_daily_average,
            MIN(timestamp) AS first_reading_time,
            MAX(timestamp) AS last_reading_time
        FROM readings
        GROUP BY date, sensor_id, reading_type
        ORDER BY date, sensor_id, reading_type
    """,
    "sensor": f"""
        SELECT
            sensor_id, reading_type,
            COUNT(*) AS total_records,
            AVG(calibrated_value) AS avg_value,
            STDDEV_SAMP(calibrated_value) AS std_value,
            MIN(calibrated_value) AS min_value,
            MAX(calibrated_value) AS max_value,
            QUANTILE_CONT(calibrated_value, 0.25) AS q1_value,
            QUANTILE_CONT(calibrated_value, 0.5) AS median_value,
            QUANTILE_CONT(calibrated_value, 0.75) AS q3_value,
            QUANTILE_CONT(calibrated_value, 0.95) AS p95_value,
            {_flag_stats('anomalous_reading', 'anomaly')},
            {_flag_stats('is_statistical_outlier', 'outlier')},
            {_flag_stats('has_missing_value', 'missing')},
            AVG(battery_level) AS avg_battery_level,
            MIN(battery_level) AS min_battery_level,
            MAX(battery_level) AS max_battery_level,
            MIN(timestamp) AS first_reading,
            MAX(timestamp) AS last_reading,
            COUNT(DISTINCT date) AS active_days
        FROM readings
        GROUP BY sensor_id, reading_type
        ORDER BY sensor_id, reading_type
    """,
    "reading_type": f"""
        SELECT
            reading_type,
            COUNT(*) AS total_records,
            COUNT(DISTINCT sensor_id) AS unique_sensors,
            COUNT(DISTINCT date) AS unique_dates,
            AVG(calibrated_value) AS avg_value,
            STDDEV_SAMP(calibrated_value) AS std_value,
            MIN(calibrated_value) AS min_value,
            MAX(calibrated_value) AS max_value,
            QUANTILE_CONT(calibrated_value, 0.05) AS p5_value,
            QUANTILE_CONT(calibrated_value, 0.25) AS q1_value,
            QUANTILE_CONT(calibrated_value, 0.5) AS median_value,
            QUANTILE_CONT(calibrated_value, 0.75) AS q3_value,
            QUANTILE_CONT(calibrated_value, 0.95) AS p95_value,
            {_flag_stats('anomalous_reading', 'anomaly')},
            {_flag_stats('is_statistical_outlier', 'outlier')},
            {_flag_stats('has_missing_value', 'missing')},
            AVG(daily_average) AS avg_daily_average,
            MIN(timestamp) AS earliest_reading,
            MAX(timestamp) AS latest_reading
        FROM readings
        GROUP BY reading_type
        ORDER BY reading_type
    """,
    "hourly": f"""
        SELECT
            date,
            {HOUR_BUCKET} % 24 AS hour,
            reading_type,
            COUNT(*) AS record_count,
            COUNT(DISTINCT sensor_id) AS active_sensors,
            AVG(calibrated_value) AS avg_value,
            STDDEV_SAMP(calibrated_value) AS std_value,
            MIN(calibrated_value) AS min_value,
            MAX(calibrated_value) AS max_value,
            {_flag_stats('anomalous_reading', 'anomaly')},
            AVG(battery_level) AS avg_battery_level
        FROM readings
        GROUP BY date, {HOUR_BUCKET} % 24, reading_type
        ORDER BY date, hour, reading_type
    """,
    "battery": f"""
        SELECT
            sensor_id, date,
            COUNT(*) AS total_readings,
            AVG(battery_level) AS avg_battery_level,
            MIN(battery_level) AS min_battery_level,
            MAX(battery_level) AS max_battery_level,
            STDDEV_SAMP(battery_level) AS std_battery_level,
            MAX(battery_level) - MIN(battery_level) AS battery_drain,
            {_battery_status_sql()} AS battery_status,
            MIN(timestamp) AS first_reading_time,
            MAX(timestamp) AS last_reading_time
        FROM readings
        GROUP BY sensor_id, date
        ORDER BY sensor_id, date
    """,
    "anomaly": """
        SELECT
            r.sensor_id, r.reading_type, r.date,
            COUNT(*) AS total_readings,
            COUNT(*) FILTER (WHERE r.anomalous_reading) AS anomaly_count,
            CAST(COUNT(*) FILTER (WHERE r.anomalous_reading) AS DOUBLE) * 100 / COUNT(*) AS anomaly_percentage,
            COUNT(*) FILTER (WHERE r.is_statistical_outlier) AS outlier_count,
            COUNT(*) FILTER (WHERE r.is_range_anomaly) AS range_anomaly_count,
            COUNT(*) FILTER (WHERE r.is_temporal_anomaly) AS temporal_anomaly_count,
            AVG(r.calibrated_value) FILTER (WHERE r.anomalous_reading) AS avg_anomalous_value,
            MIN(r.calibrated_value) FILTER (WHERE r.anomalous_reading) AS min_anomalous_value,
            MAX(r.calibrated_value) FILTER (WHERE r.anomalous_reading) AS max_anomalous_value,
            COUNT(*) FILTER (WHERE r.anomalous_reading AND r.calibrated_value < t.type_mean) AS low_anomalies,
            COUNT(*) FILTER (WHERE r.anomalous_reading AND r.calibrated_value > t.type_mean) AS high_anomalies
        FROM readings r
        JOIN (
            SELECT reading_type, AVG(calibrated_value) AS type_mean
            FROM readings
            GROUP BY reading_type
        ) t ON r.reading_type = t.reading_type
        GROUP BY r.sensor_id, r.reading_type, r.date
        HAVING COUNT(*) FILTER (WHERE r.anomalous_reading) > 0
        ORDER BY r.sensor_id, r.reading_type, r.date
    """
}

SUMMARY_TABLES = tuple(SUMMARY_QUERIES)

HOURS_SQL = f"SELECT DISTINCT sensor_id, reading_type, {HOUR_BUCKET} AS bucket FROM readings"

GAP_PERIODS_SQL = f"""
    SELECT
        sensor_id, reading_type,
        to_timestamp((prev_bucket + 1) * 3600) AS start_time,
        to_timestamp((bucket - 1) * 3600) AS end_time,
        bucket - prev_bucket - 1 AS duration_hours
    FROM (
        SELECT
            sensor_id, reading_type, bucket,
            LAG(bucket) OVER (PARTITION BY sensor_id, reading_type ORDER BY bucket) AS prev_bucket
        FROM ({HOURS_SQL}) AS hours
    ) AS ordered
    WHERE bucket - prev_bucket > 1
    ORDER BY sensor_id, reading_type, start_time
"""

COVERAGE_SQL = f"""
    SELECT
        sensor_id, reading_type,
        to_timestamp(MIN(bucket) * 3600) AS first_hour,
        to_timestamp(MAX(bucket) * 3600) AS last_hour,
        COUNT(*) AS actual_hours,
        MAX(bucket) - MIN(bucket) + 1 AS expected_hours
    FROM ({HOURS_SQL}) AS hours
    GROUP BY sensor_id, reading_type
    ORDER BY sensor_id, reading_type
"""


def _utc_columns(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    for column in columns:
        if column in df.columns:
            df[column] = pd.to_datetime(df[column], utc=True)
    return df


def _coverage_percentage(actual: int, expected: int) -> float:
    return round(actual / expected * 100, 2) if expected else 0.0


class SummaryTableGenerator:
    """Builds and writes summary tables and hourly coverage over the processed readings."""

    def __init__(self, config: PipelineConfig, store: Optional[ProcessedDataStore] = None):
        """
        Initialize the generator.

        Args:
            config: Pipeline configuration
            store: Query store to read through; a new one is opened if omitted
        """
        self.config = config
        self.logger = get_logger(__name__)
        self.store = store or ProcessedDataStore(config)
        self.output_dir = Path(config.paths.reports_dir) / SUMMARY_DIRNAME

    def table(self, name: str, **filters) -> pd.DataFrame:
        """
        One summary table.

        Args:
            name: One of ``daily``, ``sensor``, ``reading_type``, ``hourly``,
                ``battery`` or ``anomaly``
            **filters: ``sensor_id``, ``reading_type``, ``date_from``, ``date_to``

        Raises:
            ValueError: If the table name is unknown
        """
        if name not in SUMMARY_QUERIES:
            raise ValueError(f"Unknown summary table '{name}', expected one of {list(SUMMARY_TABLES)}")

        df = self.store.select(SUMMARY_QUERIES[name], **filters)
        return _utc_columns(df, [
            "first_reading_time", "last_reading_time", "first_reading",
            "last_reading", "earliest_reading", "latest_reading"
        ])

    def tables(self, **filters) -> Dict[str, pd.DataFrame]:
        """Every summary table, keyed by name."""
        return {name: self.table(name, **filters) for name in SUMMARY_TABLES}

    def write_all(self, **filters) -> Dict[str, Path]:
        """
        Write every summary table as Parquet plus a ``metadata.json`` index.

        Returns:
            Table name to written path; empty when nothing is stored

        Raises:
            PersistenceError: If a table or the metadata cannot be written
        """
        if not self.store.has_data():
            self.logger.info("No processed data, skipping summary tables")
            return {}

        compression = self.config.write.compression
        written = {}
        row_counts = {}
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            for name, df in self.tables(**filters).items():
                path = self.output_dir / f"{name}_summary.parquet"
                pq.write_table(pa.Table.from_pandas(df, preserve_index=False), path, compression=compression)
                written[name] = path
                row_counts[name] = len(df)
        except (OSError, pa.ArrowException) as e:
            raise PersistenceError(f"Failed to write summary tables: {e}") from e

        summary = self.store.summary(**filters)
        metadata = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "source_records": summary["total_records"],
            "unique_sensors": summary["unique_sensors"],
            "unique_reading_types": summary["unique_reading_types"],
            "date_range": summary["timestamps"],
            "filters": {k: str(v) for k, v in filters.items() if v is not None},
            "tables": {
                name: {"file": path.name, "rows": row_counts[name]} for name, path in written.items()
            }
        }
        try:
            atomic_write_text(self.output_dir / "metadata.json", json.dumps(metadata, indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write summary table metadata: {e}") from e

        self.logger.info(f"Wrote {len(written)} summary tables to {self.output_dir}")
        return written

    def gap_periods(self, **filters) -> pd.DataFrame:
        """
        Runs of hours with no reading, per sensor and reading type.

        Each row covers the empty hours between two hours that have readings;
        ``is_significant`` marks gaps of at least ``detection.max_time_gap_hours``.
        """
        df = self.store.select(GAP_PERIODS_SQL, **filters)
        if df.empty:
            return pd.DataFrame(columns=[
                "sensor_id", "reading_type", "start_time", "end_time", "duration_hours", "is_significant"
            ])

        df = _utc_columns(df, ["start_time", "end_time"])
        df["duration_hours"] = df["duration_hours"].astype("int64")
        df["is_significant"] = df["duration_hours"] >= self.config.detection.max_time_gap_hours
        return df

    def coverage(self, **filters) -> pd.DataFrame:
        """Hourly coverage between each key's first and last reading."""
        df = self.store.select(COVERAGE_SQL, **filters)
        if df.empty:
            return pd.DataFrame(columns=[
                "sensor_id", "reading_type", "first_hour", "last_hour",
                "actual_hours", "expected_hours", "missing_hours", "coverage_percentage"
            ])

        df = _utc_columns(df, ["first_hour", "last_hour"])
        df["actual_hours"] = df["actual_hours"].astype("int64")
        df["expected_hours"] = df["expected_hours"].astype("int64")
        df["missing_hours"] = df["expected_hours"] - df["actual_hours"]
        df["coverage_percentage"] = [
            _coverage_percentage(a, e) for a, e in zip(df["actual_hours"], df["expected_hours"])
        ]
        return df

    def gap_summary(self, **filters) -> Dict[str, Any]:
        """
        Totals of hourly coverage and gaps across every sensor and reading type.

        Returns:
            Combination and hour totals, overall coverage, gap counts and a
            per reading type coverage breakdown
        """
        coverage = self.coverage(**filters)
        gaps = self.gap_periods(**filters)

        expected = int(coverage["expected_hours"].sum()) if not coverage.empty else 0
        actual = int(coverage["actual_hours"].sum()) if not coverage.empty else 0

        by_type = {}
        for reading_type, group in coverage.groupby("reading_type", sort=True):
            type_expected = int(group["expected_hours"].sum())
            type_actual = int(group["actual_hours"].sum())
            by_type[str(reading_type)] = {
                "expected_hours": type_expected,
                "actual_hours": type_actual,
                "sensors": int(group["sensor_id"].nunique()),
                "coverage_percentage": _coverage_percentage(type_actual, type_expected)
            }

        return {
            "total_combinations": len(coverage),
            "total_expected_hours": expected,
            "total_actual_hours": actual,
            "total_missing_hours": expected - actual,
            "overall_coverage_percentage": _coverage_percentage(actual, expected),
            "total_gaps": len(gaps),
            "significant_gaps": int(gaps["is_significant"].sum()) if not gaps.empty else 0,
            "threshold_hours": self.config.detection.max_time_gap_hours,
            "coverage_by_reading_type": by_type
        }

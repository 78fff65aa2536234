"""
Pytest configuration and shared fixtures for testing.

Provides common test fixtures and setup for all test modules.
"""

import tempfile
import pytest
from pathlib import Path
from datetime import datetime, timedelta
from typing import Iterable, Tuple

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from agri_pipeline.config import PipelineConfig
from agri_pipeline.components import (
    ParquetIngestionComponent, CalibrationEngine, RollingAggregator, AnomalyDetector
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def config_data(temp_dir):
    """Raw configuration dictionary with temporary paths."""
    return {
        "pipeline": {
            "name": "test_agricultural_sensor_pipeline",
            "version": "1.0.0"
        },
        "paths": {
            "data_raw": str(temp_dir / "raw"),
            "data_processed": str(temp_dir / "processed"),
            "reports_dir": str(temp_dir / "reports"),
            "exports_dir": str(temp_dir / "exports")
        },
        "schema": {
            "expected_columns": ["sensor_id", "timestamp", "reading_type", "value", "battery_level"],
            "types": {
                "sensor_id": "VARCHAR",
                "timestamp": "TIMESTAMP",
                "reading_type": "VARCHAR",
                "value": "DOUBLE",
                "battery_level": "DOUBLE"
            }
        },
        "ranges": {
            "temperature": {"min": -10, "max": 60},
            "humidity": {"min": 0, "max": 100},
            "battery_level": {"min": 0, "max": 100}
        },
        "calibration": {
            "temperature": {"multiplier": 1.0, "offset": 0.0},
            "humidity": {"multiplier": 1.0, "offset": 0.0}
        },
        "write": {
            "compression": "snappy",
            "partition_by": ["date", "sensor_id"]
        },
        "detection": {
            "outlier_method": "zscore",
            "outlier_threshold": 3.0,
            "iqr_multiplier": 1.5,
            "max_time_gap_hours": 24
        },
        "rolling": {
            "window_days": 7,
            "state_file": str(temp_dir / "state" / "rolling_windows.json")
        },
        "checkpoint": {
            "incremental_mode": True,
            "checkpoint_file": str(temp_dir / "checkpoints" / "processed_files.jsonl"),
            "verify_fingerprint": True
        },
        "processing": {
            "max_workers": 1
        }
    }


@pytest.fixture
def sample_config(config_data):
    """Create a test configuration with temporary paths."""
    return PipelineConfig(**config_data)


@pytest.fixture
def sample_sensor_data():
    """Create sample sensor data for testing."""
    data = {
        "sensor_id": ["sensor_1", "sensor_1", "sensor_2", "sensor_2", "sensor_3"],
        "timestamp": [
            datetime(2023, 6, 1, 10, 0, 0),
            datetime(2023, 6, 1, 10, 30, 0),
            datetime(2023, 6, 1, 10, 15, 0),
            datetime(2023, 6, 1, 10, 45, 0),
            datetime(2023, 6, 1, 11, 0, 0)
        ],
        "reading_type": ["temperature", "humidity", "temperature", "humidity", "temperature"],
        "value": [25.5, 65.2, 24.8, 68.1, 26.2],
        "battery_level": [95.5, 95.0, 87.3, 86.8, 92.1]
    }
    return pd.DataFrame(data)


@pytest.fixture
def invalid_schema_data():
    """Create data with invalid schema for testing."""
    data = {
        "sensor_id": ["sensor_1", "sensor_2"],
        "timestamp": [datetime(2023, 6, 1, 10, 0, 0), datetime(2023, 6, 1, 10, 30, 0)],
        "reading_type": ["temperature", "humidity"],
        "value": [25.5, 65.2],
        # Missing battery_level column
        "extra_column": ["extra1", "extra2"]
    }
    return pd.DataFrame(data)


@pytest.fixture
def wrong_types_data():
    """Create data with wrong column types for testing."""
    data = {
        "sensor_id": ["sensor_1", "sensor_2"],
        "timestamp": ["2023-06-01 10:00:00", "2023-06-01 10:30:00"],
        "reading_type": ["temperature", "humidity"],
        "value": ["25.5", "65.2"],  # String instead of float
        "battery_level": [95.5, 68.1]
    }
    return pd.DataFrame(data)


def create_test_parquet_file(data: pd.DataFrame, file_path: Path) -> None:
    """
    Create a test Parquet file from DataFrame.

    Args:
        data: DataFrame to save
        file_path: Path where to save the file
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    if 'timestamp' in data.columns and data['timestamp'].dtype == 'object':
        data = data.copy()
        data['timestamp'] = pd.to_datetime(data['timestamp'])

    table = pa.Table.from_pandas(data, preserve_index=False)
    pq.write_table(table, file_path)


def shift_days(data: pd.DataFrame, days: int) -> pd.DataFrame:
    """Copy of raw data with every timestamp moved by whole days."""
    shifted = data.copy()
    shifted['timestamp'] = pd.to_datetime(shifted['timestamp']) + timedelta(days=days)
    return shifted


def make_calibrated_frame(rows: Iterable[Tuple[str, datetime, str, float]],
                          battery_level: float = 90.0) -> pd.DataFrame:
    """
    Build a calibrated batch from ``(sensor_id, timestamp, reading_type, value)`` rows.

    Timestamps are treated as UTC and ``calibrated_value`` equals ``raw_value``.
    """
    df = pd.DataFrame(list(rows), columns=["sensor_id", "timestamp", "reading_type", "raw_value"])
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
    df['raw_value'] = df['raw_value'].astype('float64')
    df['battery_level'] = battery_level
    df['original_value'] = df['raw_value']
    df['calibrated_value'] = df['raw_value']
    df['calibration_applied'] = df['raw_value'].notna()
    return df


def make_flagged_frame(total: int, missing: int = 0, anomaly: int = 0, outlier: int = 0,
                       temporal: int = 0, reading_type: str = "temperature") -> pd.DataFrame:
    """A detected batch with the given number of rows carrying each flag."""
    def flags(count):
        return np.arange(total) < count

    return pd.DataFrame({
        "sensor_id": [f"sensor_{i % 3}" for i in range(total)],
        "timestamp": pd.date_range("2023-06-01", periods=total, freq="h", tz="UTC"),
        "reading_type": reading_type,
        "has_missing_value": flags(missing),
        "anomalous_reading": flags(anomaly),
        "is_statistical_outlier": flags(outlier),
        "is_temporal_anomaly": flags(temporal),
        "is_range_anomaly": False
    })


@pytest.fixture
def sample_parquet_files(temp_dir, sample_config, sample_sensor_data):
    """Create sample Parquet files in the test raw data directory."""
    raw_dir = Path(sample_config.paths.data_raw)
    raw_dir.mkdir(parents=True, exist_ok=True)

    files = []

    # File 1: Valid data
    file1 = raw_dir / "2023-06-01.parquet"
    create_test_parquet_file(sample_sensor_data, file1)
    files.append(file1)

    # File 2: Same sensors one day later
    file2 = raw_dir / "2023-06-02.parquet"
    create_test_parquet_file(shift_days(sample_sensor_data, 1), file2)
    files.append(file2)

    return files


@pytest.fixture
def processed_frame(sample_config, sample_sensor_data):
    """Sample data run through normalization, calibration, aggregation and detection."""
    normalized = ParquetIngestionComponent(sample_config).normalize(sample_sensor_data, "2023-06-01.parquet")
    calibrated = CalibrationEngine(sample_config).execute(normalized)
    aggregated = RollingAggregator(sample_config, load_state=False).execute(calibrated)
    return AnomalyDetector(sample_config).execute(aggregated)

"""
Anomaly detection component for the agricultural sensor quality pipeline.

Runs four independent checks over a calibrated batch: missing values, value
range, statistical outliers (Z-score or IQR per reading type) and temporal
gaps per sensor. Readings are only flagged, never removed.
"""

import threading
from typing import Any, List, Mapping, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from agri_pipeline.components.base import DetectionComponent
from agri_pipeline.config import PipelineConfig
from agri_pipeline.models import QualityFlags
from agri_pipeline.utils import get_logger, ComputationError


SORT_COLUMNS = ["sensor_id", "timestamp", "reading_type"]

FLAG_COLUMNS = [
    "has_missing_value",
    "is_range_anomaly",
    "is_statistical_outlier",
    "is_temporal_anomaly",
    "anomalous_reading"
]

RECORD_COLUMNS = [
    "has_missing_value",
    "is_range_anomaly",
    "is_statistical_outlier",
    "is_temporal_anomaly",
    "hours_since_last",
    "z_score"
]


def zscore_outliers(values: pd.Series, threshold: float) -> Tuple[pd.Series, pd.Series]:
    """
    Population Z-scores and outlier flags for one reading type.

    Missing values get no score and are never flagged. With fewer than two
    distinct values every present reading scores 0.

    Returns:
        Tuple of (absolute z-scores, outlier flags) aligned to ``values``
    """
    scores = pd.Series(np.nan, index=values.index, dtype='float64')
    flags = pd.Series(False, index=values.index, dtype=bool)

    present = values.dropna()
    if present.empty:
        return scores, flags

    if present.nunique() < 2 or present.std(ddof=0) == 0:
        scores[present.index] = 0.0
        return scores, flags

    z = np.abs(stats.zscore(present.to_numpy(dtype='float64'), ddof=0))
    if not np.all(np.isfinite(z)):
        raise ComputationError("Z-score computation produced non-finite values")

    scores[present.index] = z
    flags[present.index] = z > threshold
    return scores, flags


def iqr_outliers(values: pd.Series, multiplier: float) -> pd.Series:
    """Flags values strictly outside ``[Q1 - k*IQR, Q3 + k*IQR]``."""
    flags = pd.Series(False, index=values.index, dtype=bool)

    present = values.dropna()
    if present.empty:
        return flags

    q1, q3 = np.percentile(present.to_numpy(dtype='float64'), [25, 75])
    iqr = q3 - q1
    lower = q1 - multiplier * iqr
    upper = q3 + multiplier * iqr

    flags[present.index] = (present < lower) | (present > upper)
    return flags


def to_quality_flags(row: Mapping[str, Any]) -> QualityFlags:
    """
    Build the flag record for one detected reading.

    The record derives ``anomalous_reading`` from its three checks, and the
    detector takes the composite column from these records.
    """
    def _optional(key):
        value = row.get(key)
        return None if value is None or pd.isna(value) else float(value)

    return QualityFlags(
        has_missing_value=bool(row["has_missing_value"]),
        is_range_anomaly=bool(row["is_range_anomaly"]),
        is_statistical_outlier=bool(row["is_statistical_outlier"]),
        is_temporal_anomaly=bool(row["is_temporal_anomaly"]),
        hours_since_last=_optional("hours_since_last"),
        z_score=_optional("z_score")
    )


class AnomalyDetector(DetectionComponent):
    """Flags missing, out-of-range, outlying and late readings in a batch."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize anomaly detector.

        Args:
            config: Pipeline configuration with ranges and detection settings
        """
        super().__init__(config)
        self.logger = get_logger(__name__)
        self.settings = config.detection
        self._stats_lock = threading.Lock()

        self.stats = {
            "records_checked": 0,
            "missing_values": 0,
            "range_anomalies": 0,
            "statistical_outliers": 0,
            "temporal_anomalies": 0,
            "anomalous_readings": 0,
            "battery_out_of_range": 0
        }

    def execute(self, readings: pd.DataFrame) -> pd.DataFrame:
        """
        Run every check and attach the flag columns.

        Args:
            readings: Calibrated readings, optionally carrying ``daily_average``

        Returns:
            Readings sorted by sensor, time and type with flag columns added
        """
        flagged = readings.sort_values(SORT_COLUMNS, kind='mergesort').reset_index(drop=True)
        values = flagged['calibrated_value'].astype('float64')

        flagged['has_missing_value'] = flagged['raw_value'].isna()
        flagged['is_range_anomaly'] = self._detect_range(flagged, values)
        flagged['z_score'], flagged['is_statistical_outlier'] = self._detect_outliers(flagged, values)
        flagged['hours_since_last'], flagged['is_temporal_anomaly'] = self._detect_gaps(flagged)
        flagged['anomalous_reading'] = pd.Series(
            [record.anomalous_reading for record in self.quality_flags(flagged)], index=flagged.index, dtype=bool
        )

        if 'daily_average' in flagged.columns:
            flagged['deviation_from_average'] = values - flagged['daily_average']

        battery_issues = self._check_battery(flagged)

        for col in FLAG_COLUMNS:
            flagged[col] = flagged[col].astype(bool)

        with self._stats_lock:
            self.stats["records_checked"] += len(flagged)
            self.stats["missing_values"] += int(flagged['has_missing_value'].sum())
            self.stats["range_anomalies"] += int(flagged['is_range_anomaly'].sum())
            self.stats["statistical_outliers"] += int(flagged['is_statistical_outlier'].sum())
            self.stats["temporal_anomalies"] += int(flagged['is_temporal_anomaly'].sum())
            self.stats["anomalous_readings"] += int(flagged['anomalous_reading'].sum())
            self.stats["battery_out_of_range"] += battery_issues

        anomalous = int(flagged['anomalous_reading'].sum())
        if anomalous > 0:
            self.logger.info(f"   Detected {anomalous} anomalous readings")

        return flagged

    def quality_flags(self, flagged: pd.DataFrame) -> List[QualityFlags]:
        """One flag record per detected reading, in row order."""
        rows = flagged[RECORD_COLUMNS].itertuples(index=False, name=None)
        return [to_quality_flags(dict(zip(RECORD_COLUMNS, row))) for row in rows]

    def _detect_range(self, data: pd.DataFrame, values: pd.Series) -> pd.Series:
        violations = pd.Series(False, index=data.index, dtype=bool)

        for reading_type in data['reading_type'].unique():
            value_range = self.config.get_value_range(reading_type)
            if value_range is None:
                continue

            mask = (data['reading_type'] == reading_type) & values.notna()
            violations[mask] = (values[mask] < value_range.min) | (values[mask] > value_range.max)

        return violations

    def _detect_outliers(self, data: pd.DataFrame, values: pd.Series) -> Tuple[pd.Series, pd.Series]:
        z_scores = pd.Series(np.nan, index=data.index, dtype='float64')
        outliers = pd.Series(False, index=data.index, dtype=bool)

        for reading_type in data['reading_type'].unique():
            mask = data['reading_type'] == reading_type
            type_values = values[mask]

            scores, z_flags = zscore_outliers(type_values, self.settings.outlier_threshold)
            z_scores[mask] = scores

            if self.settings.outlier_method == "iqr":
                outliers[mask] = iqr_outliers(type_values, self.settings.iqr_multiplier)
            else:
                outliers[mask] = z_flags

            if type_values.notna().sum() == 1:
                self.logger.debug(f"   Cannot compute outliers for {reading_type}: only 1 value")

        return z_scores, outliers

    def _detect_gaps(self, data: pd.DataFrame) -> Tuple[pd.Series, pd.Series]:
        """Hours since the previous reading of the same sensor and the gap flag."""
        ordered = data.sort_values(['sensor_id', 'timestamp'], kind='mergesort')
        gaps = ordered.groupby('sensor_id', sort=False)['timestamp'].diff()
        hours = (gaps.dt.total_seconds() / 3600.0).reindex(data.index)

        flags = (hours > self.settings.max_time_gap_hours).fillna(False).astype(bool)
        return hours, flags

    def _check_battery(self, data: pd.DataFrame) -> int:
        """Count battery levels outside the configured range; they are logged, not flagged."""
        battery_range = self.config.get_value_range('battery_level')
        if battery_range is None or 'battery_level' not in data.columns:
            return 0

        battery = data['battery_level']
        out_of_range = int(((battery < battery_range.min) | (battery > battery_range.max)).sum())
        if out_of_range > 0:
            self.logger.warning(
                f"   Found {out_of_range} battery level anomalies (not flagged as reading anomalies)"
            )
        return out_of_range

    def log_summary(self) -> None:
        """Log detection statistics."""
        self.logger.info("=== Detection Summary ===")
        for key, value in self.stats.items():
            self.logger.info(f"{key.replace('_', ' ').title()}: {value}")

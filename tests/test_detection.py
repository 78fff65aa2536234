"""
Tests for the anomaly detector.

Covers missing values, range checks, Z-score and IQR outliers, temporal
gaps and the composite flag.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

import numpy as np
import pandas as pd

from agri_pipeline.components.detection import (
    AnomalyDetector,
    iqr_outliers,
    to_quality_flags,
    zscore_outliers
)
from agri_pipeline.config import DetectionSettings
from agri_pipeline.utils import ComputationError
from tests.conftest import make_calibrated_frame


START = datetime(2023, 6, 1)


def hourly(values, sensor_id="sensor_1", reading_type="temperature"):
    return [(sensor_id, START + timedelta(hours=i), reading_type, v) for i, v in enumerate(values)]


class TestZScore:
    """Test suite for the Z-score helper."""

    def test_single_spike_flagged(self):
        """Test one extreme value among constant values is flagged."""
        values = pd.Series([10.0] * 20 + [100.0])

        scores, flags = zscore_outliers(values, threshold=3.0)

        assert flags.tolist() == [False] * 20 + [True]
        assert scores.iloc[-1] == pytest.approx(np.sqrt(20))

    def test_zero_std(self):
        """Test identical values produce no outliers and z of 0."""
        values = pd.Series([5.0, 5.0, 5.0])

        scores, flags = zscore_outliers(values, threshold=3.0)

        assert not flags.any()
        assert (scores == 0.0).all()

    def test_single_value(self):
        """Test a lone value cannot be an outlier."""
        scores, flags = zscore_outliers(pd.Series([42.0]), threshold=3.0)

        assert not flags.any()
        assert scores.iloc[0] == 0.0

    def test_missing_values_ignored(self):
        """Test NaN values get no score and are never flagged."""
        values = pd.Series([10.0] * 20 + [np.nan, 100.0])

        scores, flags = zscore_outliers(values, threshold=3.0)

        assert np.isnan(scores.iloc[20])
        assert not flags.iloc[20]
        assert flags.iloc[21]

    def test_population_std(self):
        """Test scores use the population standard deviation."""
        values = pd.Series([1.0, 2.0, 3.0, 4.0])

        scores, _ = zscore_outliers(values, threshold=3.0)

        expected = np.abs(values - values.mean()) / values.std(ddof=0)
        np.testing.assert_allclose(scores.to_numpy(), expected.to_numpy())

    def test_monotonic(self):
        """Test moving a flagged value further from the mean keeps it flagged."""
        base = [10.0, 11.0, 9.0, 10.5, 9.5] * 4

        _, near = zscore_outliers(pd.Series(base + [30.0]), threshold=3.0)
        _, far = zscore_outliers(pd.Series(base + [60.0]), threshold=3.0)

        assert near.iloc[-1]
        assert far.iloc[-1]

    def test_non_finite_result(self):
        """Test a non-finite score is reported as a computation error."""
        with patch("agri_pipeline.components.detection.stats.zscore", return_value=np.array([np.nan, np.nan])):
            with pytest.raises(ComputationError):
                zscore_outliers(pd.Series([1.0, 2.0]), threshold=3.0)


class TestIQR:
    """Test suite for the IQR helper."""

    def test_bounds_and_flags(self):
        """Test values strictly outside the fences are flagged."""
        values = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0, 100.0])

        flags = iqr_outliers(values, multiplier=1.5)

        assert flags.tolist() == [False] * 10 + [True]

    def test_bound_ordering(self):
        """Test lower <= Q1 <= Q3 <= upper and every flagged value lies outside."""
        rng = np.random.default_rng(7)
        values = pd.Series(np.append(rng.normal(50, 5, 200), [5.0, 120.0]))

        flags = iqr_outliers(values, multiplier=1.5)

        q1, q3 = np.percentile(values, [25, 75])
        lower, upper = q1 - 1.5 * (q3 - q1), q3 + 1.5 * (q3 - q1)
        assert lower <= q1 <= q3 <= upper
        assert ((values[flags] < lower) | (values[flags] > upper)).all()
        assert not ((values[~flags] < lower) | (values[~flags] > upper)).any()
        assert flags.iloc[-1] and flags.iloc[-2]

    def test_value_on_fence_not_flagged(self):
        """Test a value exactly on the upper fence is inside."""
        # Q1 = 2, Q3 = 4, IQR = 2, upper fence = 7
        values = pd.Series([1.0, 2.0, 3.0, 4.0, 7.0])

        flags = iqr_outliers(values, multiplier=1.5)

        assert not flags.any()

    def test_all_missing(self):
        """Test an all-NaN group has no flags."""
        flags = iqr_outliers(pd.Series([np.nan, np.nan]), multiplier=1.5)

        assert not flags.any()


class TestAnomalyDetector:
    """Test suite for AnomalyDetector."""

    def test_init(self, sample_config):
        """Test component initialization."""
        detector = AnomalyDetector(sample_config)

        assert detector.settings.outlier_method == "zscore"
        assert detector.stats["records_checked"] == 0

    def test_range_check(self, sample_config):
        """Test values outside the configured range are flagged."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([25.0, 70.0, -15.0]))

        result = detector.execute(batch)

        assert result["is_range_anomaly"].tolist() == [False, True, True]
        assert result["anomalous_reading"].tolist() == [False, True, True]

    def test_range_bounds_inclusive(self, sample_config):
        """Test values equal to the bounds are in range."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([-10.0, 60.0]))

        result = detector.execute(batch)

        assert not result["is_range_anomaly"].any()

    def test_no_range_configured(self, sample_config):
        """Test reading types without a range are never range anomalies."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([1e6, -1e6], reading_type="soil_moisture"))

        result = detector.execute(batch)

        assert not result["is_range_anomaly"].any()

    def test_missing_values(self, sample_config):
        """Test missing values are flagged but never range or outlier anomalies."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([25.0, np.nan, 26.0]))

        result = detector.execute(batch)

        assert result["has_missing_value"].tolist() == [False, True, False]
        assert not result.loc[1, "is_range_anomaly"]
        assert not result.loc[1, "is_statistical_outlier"]
        assert not result.loc[1, "anomalous_reading"]

    def test_statistical_outliers_per_type(self, sample_config):
        """Test outliers are computed within each reading type."""
        detector = AnomalyDetector(sample_config)
        rows = hourly([20.0] * 20 + [55.0]) + hourly([55.0] * 21, reading_type="humidity")
        batch = make_calibrated_frame(rows)

        result = detector.execute(batch)

        flagged = result[result["is_statistical_outlier"]]
        assert len(flagged) == 1
        assert flagged.iloc[0]["reading_type"] == "temperature"
        assert flagged.iloc[0]["calibrated_value"] == 55.0

    def test_iqr_method(self, sample_config):
        """Test the IQR method is used when configured, with z-scores still recorded."""
        config = sample_config.model_copy(update={
            "detection": DetectionSettings(outlier_method="iqr", iqr_multiplier=1.5)
        })
        detector = AnomalyDetector(config)
        batch = make_calibrated_frame(hourly([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0, 50.0]))

        result = detector.execute(batch)

        assert result["is_statistical_outlier"].tolist() == [False] * 10 + [True]
        assert result["z_score"].notna().all()

    def test_temporal_gap(self, sample_config):
        """Test gaps over the limit are flagged and the first reading never is."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame([
            ("sensor_1", START, "temperature", 20.0),
            ("sensor_1", START + timedelta(hours=1), "temperature", 21.0),
            ("sensor_1", START + timedelta(hours=30), "temperature", 22.0),
            ("sensor_2", START + timedelta(hours=30), "temperature", 23.0),
        ])

        result = detector.execute(batch)

        sensor_1 = result[result["sensor_id"] == "sensor_1"]
        assert np.isnan(sensor_1["hours_since_last"].iloc[0])
        assert sensor_1["hours_since_last"].iloc[1:].tolist() == [1.0, 29.0]
        assert sensor_1["is_temporal_anomaly"].tolist() == [False, False, True]
        assert not result[result["sensor_id"] == "sensor_2"]["is_temporal_anomaly"].any()

    def test_temporal_gap_at_limit(self, sample_config):
        """Test a gap equal to the limit is not flagged."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame([
            ("sensor_1", START, "temperature", 20.0),
            ("sensor_1", START + timedelta(hours=24), "temperature", 21.0),
        ])

        result = detector.execute(batch)

        assert not result["is_temporal_anomaly"].any()

    def test_temporal_gap_across_reading_types(self, sample_config):
        """Test gaps are measured per sensor, whatever the reading type."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame([
            ("sensor_1", START, "temperature", 20.0),
            ("sensor_1", START + timedelta(hours=2), "humidity", 60.0),
        ])

        result = detector.execute(batch)

        assert result["hours_since_last"].iloc[1] == 2.0

    def test_output_sorted(self, sample_config):
        """Test output rows are ordered by sensor, time and reading type."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([20.0, 21.0, 22.0])[::-1])

        result = detector.execute(batch)

        assert result["timestamp"].is_monotonic_increasing

    def test_deviation_from_average(self, sample_config):
        """Test the deviation field is calibrated value minus daily average."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([20.0, 30.0]))
        batch["daily_average"] = [20.0, 25.0]

        result = detector.execute(batch)

        assert result["deviation_from_average"].tolist() == [0.0, 5.0]

    def test_battery_logged_not_flagged(self, sample_config):
        """Test out of range battery levels are logged without flagging readings."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([20.0, 21.0]), battery_level=125.0)

        with patch.object(detector.logger, 'warning') as mock_warning:
            result = detector.execute(batch)

        assert not result["anomalous_reading"].any()
        assert detector.stats["battery_out_of_range"] == 2
        mock_warning.assert_called_once()

    def test_flags_are_pure(self, sample_config):
        """Test detecting the same batch twice gives identical flags."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([20.0] * 20 + [55.0, np.nan, 70.0]))

        first = detector.execute(batch)
        second = detector.execute(batch)

        pd.testing.assert_frame_equal(first, second)

    def test_stats(self, sample_config):
        """Test detection statistics accumulate."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([25.0, 70.0, np.nan]))

        detector.execute(batch)

        assert detector.stats["records_checked"] == 3
        assert detector.stats["missing_values"] == 1
        assert detector.stats["range_anomalies"] == 1


class TestQualityFlags:
    """Test suite for the per-reading flag record."""

    def test_to_quality_flags(self, sample_config):
        """Test a detected row converts to a flag record with its composite."""
        detector = AnomalyDetector(sample_config)
        result = detector.execute(make_calibrated_frame(hourly([25.0, 70.0])))

        flags = [to_quality_flags(row) for row in result.to_dict(orient="records")]

        assert flags[0].anomalous_reading is False
        assert flags[0].hours_since_last is None
        assert flags[1].is_range_anomaly is True
        assert flags[1].anomalous_reading is True
        assert flags[1].hours_since_last == 1.0

    def test_composite_serialized(self, sample_config):
        """Test the composite flag is part of the serialized record."""
        detector = AnomalyDetector(sample_config)
        result = detector.execute(make_calibrated_frame(hourly([25.0, 70.0])))

        dumped = to_quality_flags(result.to_dict(orient="records")[1]).model_dump()

        assert dumped["anomalous_reading"] is True

    def test_records_drive_composite(self, sample_config):
        """Test the composite column is taken from one flag record per row."""
        detector = AnomalyDetector(sample_config)
        batch = make_calibrated_frame(hourly([25.0, 70.0, np.nan]))

        result = detector.execute(batch)
        records = detector.quality_flags(result)

        assert len(records) == 3
        assert [r.anomalous_reading for r in records] == result["anomalous_reading"].tolist()
        assert records[2].has_missing_value is True
        assert records[2].anomalous_reading is False

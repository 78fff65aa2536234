"""
Tests for configuration loading and validation.
"""

import copy
import pytest
from pathlib import Path

import yaml

from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import ConfigurationError


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def write_config(path: Path, data) -> Path:
    with open(path, 'w') as f:
        yaml.safe_dump(data, f)
    return path


class TestPipelineConfig:
    """Test suite for PipelineConfig."""

    def test_default_config_loads(self):
        """Test the shipped default configuration is valid."""
        config = PipelineConfig.from_yaml(PROJECT_ROOT / "config" / "default.yaml")

        assert config.detection.outlier_method == "zscore"
        assert config.detection.outlier_threshold == 3.0
        assert config.detection.max_time_gap_hours == 24
        assert config.scoring.weights.missing == 0.3
        assert config.scoring.weights.anomaly == 0.4
        assert config.rolling.window_days == 7
        assert Path(config.paths.data_raw).is_absolute()
        assert Path(config.checkpoint.checkpoint_file).is_absolute()

    def test_from_yaml_roundtrip(self, config_data, temp_dir):
        """Test loading a configuration written to YAML."""
        path = write_config(temp_dir / "config.yaml", config_data)

        config = PipelineConfig.from_yaml(path)

        assert config.pipeline.name == "test_agricultural_sensor_pipeline"
        assert config.data_schema.expected_columns[0] == "sensor_id"

    def test_missing_file(self, temp_dir):
        """Test a missing configuration file is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            PipelineConfig.from_yaml(temp_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_dir):
        """Test unparseable YAML is a configuration error."""
        path = temp_dir / "broken.yaml"
        path.write_text("pipeline: [unclosed")

        with pytest.raises(ConfigurationError, match="not valid YAML"):
            PipelineConfig.from_yaml(path)

    def test_empty_file(self, temp_dir):
        """Test an empty configuration file is a configuration error."""
        path = temp_dir / "empty.yaml"
        path.write_text("")

        with pytest.raises(ConfigurationError, match="empty or malformed"):
            PipelineConfig.from_yaml(path)

    def test_range_min_above_max(self, config_data, temp_dir):
        """Test an inverted range is rejected."""
        data = copy.deepcopy(config_data)
        data["ranges"]["temperature"] = {"min": 60, "max": -10}
        path = write_config(temp_dir / "config.yaml", data)

        with pytest.raises(ConfigurationError, match="greater than max"):
            PipelineConfig.from_yaml(path)

    def test_unknown_outlier_method(self, config_data, temp_dir):
        """Test only zscore and iqr are accepted as outlier methods."""
        data = copy.deepcopy(config_data)
        data["detection"]["outlier_method"] = "isolation_forest"
        path = write_config(temp_dir / "config.yaml", data)

        with pytest.raises(ConfigurationError):
            PipelineConfig.from_yaml(path)

    def test_negative_weight(self, config_data, temp_dir):
        """Test scoring weights must not be negative."""
        data = copy.deepcopy(config_data)
        data["scoring"] = {"weights": {"missing": -0.3}}
        path = write_config(temp_dir / "config.yaml", data)

        with pytest.raises(ConfigurationError):
            PipelineConfig.from_yaml(path)

    def test_unknown_section_rejected(self, config_data, temp_dir):
        """Test unknown top level keys are rejected."""
        data = copy.deepcopy(config_data)
        data["transformation"] = {"z_score_threshold": 3.0}
        path = write_config(temp_dir / "config.yaml", data)

        with pytest.raises(ConfigurationError):
            PipelineConfig.from_yaml(path)

    def test_schema_types_cover_columns(self, config_data):
        """Test every expected column needs a declared type."""
        data = copy.deepcopy(config_data)
        del data["schema"]["types"]["battery_level"]

        with pytest.raises(ValueError, match="No type declared"):
            PipelineConfig(**data)

    def test_unsupported_partition_column(self, config_data):
        """Test output can only be partitioned by date, sensor or reading type."""
        data = copy.deepcopy(config_data)
        data["write"]["partition_by"] = ["date", "battery_level"]

        with pytest.raises(ValueError, match="Unsupported partition columns"):
            PipelineConfig(**data)

    def test_retention_shorter_than_window(self, config_data):
        """Test rolling history must cover at least one window."""
        data = copy.deepcopy(config_data)
        data["rolling"]["retention_days"] = 3

        with pytest.raises(ValueError, match="retention_days"):
            PipelineConfig(**data)

    def test_retention_default(self, sample_config):
        """Test rolling history defaults to thirty days."""
        assert sample_config.rolling.retention_days == 30

    def test_category_bands_sorted(self, config_data):
        """Test bands are ordered from highest to lowest lower bound."""
        data = copy.deepcopy(config_data)
        data["scoring"] = {"categories": [
            {"name": "Low", "min_score": 0},
            {"name": "High", "min_score": 80},
            {"name": "Mid", "min_score": 40}
        ]}

        config = PipelineConfig(**data)

        assert [b.name for b in config.scoring.categories] == ["High", "Mid", "Low"]

    def test_category_bands_must_start_at_zero(self, config_data):
        """Test the lowest band must cover a score of 0."""
        data = copy.deepcopy(config_data)
        data["scoring"] = {"categories": [{"name": "Only", "min_score": 10}]}

        with pytest.raises(ValueError, match="must start at 0"):
            PipelineConfig(**data)

    def test_relative_paths_resolved(self, config_data):
        """Test relative paths are resolved against the project root."""
        data = copy.deepcopy(config_data)
        data["paths"]["data_raw"] = "data/raw"

        config = PipelineConfig(**data)

        assert Path(config.paths.data_raw) == (PROJECT_ROOT / "data" / "raw").resolve()

    def test_lookups(self, sample_config):
        """Test range and calibration lookups return None for unknown types."""
        assert sample_config.get_value_range("temperature").max == 60
        assert sample_config.get_value_range("soil_moisture") is None
        assert sample_config.get_calibration("humidity").multiplier == 1.0
        assert sample_config.get_calibration("soil_moisture") is None

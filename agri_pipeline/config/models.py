"""
Pydantic models for pipeline configuration.

These models provide type-safe parsing and validation of the YAML configuration file.
Calibration parameters and expected ranges are loaded once at pipeline start and
are treated as read-only for the duration of a run.
"""

from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from agri_pipeline.utils.exceptions import ConfigurationError


PROJECT_ROOT = Path(__file__).parent.parent.parent

PARTITION_COLUMNS = ("date", "sensor_id", "reading_type")


def _resolve_project_path(value):
    """Resolve a relative path against the project root."""
    if isinstance(value, str):
        path = Path(value)
        if not path.is_absolute():
            path = (PROJECT_ROOT / value).resolve()
        return str(path)
    return value


class PipelineInfo(BaseModel):
    """Basic pipeline metadata."""
    name: str = Field(..., description="Pipeline name")
    version: str = Field(..., description="Pipeline version")


class DataPaths(BaseModel):
    """File system paths for data processing."""
    data_raw: str = Field(..., description="Directory containing raw parquet files")
    data_processed: str = Field(..., description="Directory for partitioned processed output")
    reports_dir: str = Field(..., description="Directory for quality reports")
    exports_dir: str = Field(..., description="Directory for exported datasets")

    @field_validator('data_raw', 'data_processed', 'reports_dir', 'exports_dir', mode='before')
    @classmethod
    def resolve_paths(cls, v):
        """Convert relative paths to absolute paths."""
        return _resolve_project_path(v)


class SchemaDefinition(BaseModel):
    """Expected raw data schema definition."""
    model_config = ConfigDict(extra='forbid')

    expected_columns: List[str] = Field(..., description="Required column names")
    types: Dict[str, str] = Field(..., description="Column name to DuckDB type mapping")

    @model_validator(mode='after')
    def check_types_cover_columns(self) -> "SchemaDefinition":
        missing = [c for c in self.expected_columns if c not in self.types]
        if missing:
            raise ValueError(f"No type declared for columns: {missing}")
        return self


class ValueRange(BaseModel):
    """Acceptable value range for a measurement type."""
    min: float = Field(..., description="Minimum acceptable value")
    max: float = Field(..., description="Maximum acceptable value")

    @model_validator(mode='after')
    def check_bounds(self) -> "ValueRange":
        if self.min > self.max:
            raise ValueError(f"Range min ({self.min}) is greater than max ({self.max})")
        return self


class CalibrationParams(BaseModel):
    """Sensor calibration parameters."""
    multiplier: float = Field(1.0, description="Calibration multiplier")
    offset: float = Field(0.0, description="Calibration offset")


class WriteSettings(BaseModel):
    """Processed output writing configuration."""
    compression: str = Field("snappy", description="Parquet compression codec")
    partition_by: List[str] = Field(default_factory=lambda: ["date", "sensor_id"],
                                    description="Hive partitioning columns")

    @field_validator('partition_by')
    @classmethod
    def check_partition_columns(cls, v):
        unknown = [c for c in v if c not in PARTITION_COLUMNS]
        if unknown:
            raise ValueError(f"Unsupported partition columns: {unknown}")
        return v


class DetectionSettings(BaseModel):
    """Anomaly detection parameters."""
    outlier_method: Literal["zscore", "iqr"] = Field("zscore", description="Statistical outlier method for the run")
    outlier_threshold: float = Field(3.0, gt=0, description="Z-score threshold for outlier detection")
    iqr_multiplier: float = Field(1.5, gt=0, description="IQR fence multiplier")
    max_time_gap_hours: float = Field(24.0, gt=0, description="Largest gap between readings of a sensor before flagging")


class ScoringWeights(BaseModel):
    """Penalty weight per flag percentage."""
    missing: float = Field(0.3, ge=0)
    anomaly: float = Field(0.4, ge=0)
    outlier: float = Field(0.2, ge=0)
    temporal: float = Field(0.1, ge=0)


class CategoryBand(BaseModel):
    """A named quality category with an inclusive lower score bound."""
    name: str
    min_score: float = Field(..., ge=0, le=100)


def _default_bands() -> List[CategoryBand]:
    return [
        CategoryBand(name="Excellent", min_score=90),
        CategoryBand(name="Good", min_score=70),
        CategoryBand(name="Fair", min_score=50),
        CategoryBand(name="Poor", min_score=30),
        CategoryBand(name="Critical", min_score=0),
    ]


class ScoringSettings(BaseModel):
    """Quality score weights and category bands."""
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    categories: List[CategoryBand] = Field(default_factory=_default_bands)
    no_data_category: str = Field("No Data", description="Category for batches without records")

    @field_validator('categories')
    @classmethod
    def sort_bands(cls, v):
        if not v:
            raise ValueError("At least one category band is required")
        bands = sorted(v, key=lambda b: b.min_score, reverse=True)
        if bands[-1].min_score != 0:
            raise ValueError("The lowest category band must start at 0")
        return bands


class RollingSettings(BaseModel):
    """Rolling window configuration."""
    window_days: float = Field(7, gt=0, description="Rolling window length in days")
    retention_days: float = Field(
        30, gt=0, description="History kept behind the newest reading, so reprocessed files see the same window"
    )
    state_file: str = Field(..., description="Persisted rolling window state")

    @field_validator('state_file', mode='before')
    @classmethod
    def resolve_state_path(cls, v):
        return _resolve_project_path(v)

    @model_validator(mode='after')
    def check_retention(self) -> "RollingSettings":
        if self.retention_days < self.window_days:
            raise ValueError(
                f"retention_days ({self.retention_days}) must be at least window_days ({self.window_days})"
            )
        return self


class CheckpointSettings(BaseModel):
    """Checkpoint configuration."""
    incremental_mode: bool = Field(True, description="Skip files already checkpointed")
    checkpoint_file: str = Field(..., description="Checkpoint file path")
    verify_fingerprint: bool = Field(True, description="Reprocess checkpointed files whose content changed")

    @field_validator('checkpoint_file', mode='before')
    @classmethod
    def resolve_checkpoint_path(cls, v):
        """Convert relative checkpoint path to absolute path."""
        return _resolve_project_path(v)


class ProcessingSettings(BaseModel):
    """Run execution settings."""
    max_workers: int = Field(4, ge=1, description="Files processed in parallel")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Default run timeout")


class PipelineConfig(BaseModel):
    """Complete pipeline configuration model."""
    model_config = ConfigDict(
        # Allow population by alias so YAML can use "schema"
        populate_by_name=True,
        extra='forbid'
    )

    pipeline: PipelineInfo = Field(..., description="Pipeline metadata")
    paths: DataPaths = Field(..., description="File system paths")
    data_schema: SchemaDefinition = Field(..., description="Raw data schema definition", alias="schema")
    ranges: Dict[str, ValueRange] = Field(..., description="Expected value ranges per reading type")
    calibration: Dict[str, CalibrationParams] = Field(..., description="Calibration parameters per reading type")
    write: WriteSettings = Field(default_factory=WriteSettings, description="Output writing configuration")
    detection: DetectionSettings = Field(default_factory=DetectionSettings, description="Anomaly detection parameters")
    scoring: ScoringSettings = Field(default_factory=ScoringSettings, description="Quality scoring parameters")
    rolling: RollingSettings = Field(..., description="Rolling window configuration")
    checkpoint: CheckpointSettings = Field(..., description="Checkpoint configuration")
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings, description="Execution settings")

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "PipelineConfig":
        """
        Load configuration from YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparseable or invalid
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Configuration file is not valid YAML: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration file is empty or malformed: {config_path}")

        try:
            return cls(**config_data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    def get_value_range(self, reading_type: str) -> Optional[ValueRange]:
        """Get value range for a specific reading type."""
        return self.ranges.get(reading_type)

    def get_calibration(self, reading_type: str) -> Optional[CalibrationParams]:
        """Get calibration parameters for a specific reading type, if any are configured."""
        return self.calibration.get(reading_type)

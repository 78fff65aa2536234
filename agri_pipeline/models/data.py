"""
Pydantic models for data structures used throughout the pipeline.

These models ensure type safety and validation for data flowing between components
and for the results handed back to callers.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SensorReading(BaseModel):
    """Model for an individual sensor reading.

    The model is frozen so ``raw_value`` cannot change after ingestion;
    calibration produces a new instance.
    """
    model_config = ConfigDict(frozen=True)

    sensor_id: str = Field(..., description="Unique sensor identifier")
    timestamp: datetime = Field(..., description="Reading timestamp (UTC)")
    reading_type: str = Field(..., description="Type of measurement (temperature, humidity, etc.)")
    raw_value: Optional[float] = Field(None, description="Value as ingested")
    battery_level: Optional[float] = Field(None, description="Battery level percentage (0-100)")
    calibrated_value: Optional[float] = Field(None, description="Value after calibration")
    original_value: Optional[float] = Field(None, description="Copy of raw_value recorded by calibration")
    calibration_applied: bool = Field(False, description="Whether calibration parameters were applied")


class QualityFlags(BaseModel):
    """Detection outcome for one reading, one field per check."""
    model_config = ConfigDict(frozen=True)

    has_missing_value: bool = False
    is_range_anomaly: bool = False
    is_statistical_outlier: bool = False
    is_temporal_anomaly: bool = False
    hours_since_last: Optional[float] = None
    z_score: Optional[float] = None

    @computed_field
    @property
    def anomalous_reading(self) -> bool:
        return composite_anomaly(self.is_range_anomaly, self.is_statistical_outlier, self.is_temporal_anomaly)


def composite_anomaly(is_range_anomaly: bool, is_statistical_outlier: bool, is_temporal_anomaly: bool) -> bool:
    """Composite anomaly flag: any of the three independent checks fired."""
    return bool(is_range_anomaly or is_statistical_outlier or is_temporal_anomaly)


class TypeQualityMetrics(BaseModel):
    """Flag counts for a single reading type."""
    total_records: int
    missing_count: int
    anomaly_count: int
    outlier_count: int
    temporal_count: int
    missing_percentage: float
    anomaly_percentage: float


class QualityReport(BaseModel):
    """Aggregate quality metrics for a file or a run. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="File name the report covers, or 'run'")
    total_records: int = Field(..., description="Number of readings scored")
    missing_count: int = 0
    anomaly_count: int = 0
    outlier_count: int = 0
    temporal_count: int = 0
    missing_pct: float = 0.0
    anomaly_pct: float = 0.0
    outlier_pct: float = 0.0
    temporal_pct: float = 0.0
    quality_score: float = Field(..., description="Weighted quality score (0-100)")
    category: str = Field(..., description="Category derived from score bands")
    metrics_by_type: Dict[str, TypeQualityMetrics] = Field(default_factory=dict)
    generated_at: datetime = Field(..., description="When the report was produced")


class CheckpointRecord(BaseModel):
    """Durable marker that a source file was fully processed."""
    file_identifier: str = Field(..., description="Raw file name")
    size_bytes: Optional[int] = Field(None, description="File size when processed")
    mtime: Optional[float] = Field(None, description="File modification time when processed")
    content_hash: Optional[str] = Field(None, description="sha256 of the file content")
    processed_at: datetime = Field(..., description="When the checkpoint was written")
    record_count: int = Field(0, description="Readings persisted for the file")

    def matches(self, fingerprint: Optional[Dict[str, Any]]) -> bool:
        """Whether a fresh file fingerprint describes the same content."""
        if not fingerprint:
            return True
        if self.content_hash and fingerprint.get("content_hash"):
            return self.content_hash == fingerprint["content_hash"]
        return (self.size_bytes == fingerprint.get("size_bytes")
                and self.mtime == fingerprint.get("mtime"))


class CheckpointSummary(BaseModel):
    """Checkpoint inspection result."""
    processed_files: List[str] = Field(default_factory=list)
    total_processed: int = 0
    last_timestamp: Optional[datetime] = None


class PipelineStage(str, Enum):
    """Stages a file passes through within a run."""
    PENDING = "pending"
    VALIDATING = "validating"
    NORMALIZING = "normalizing"
    CALIBRATING = "calibrating"
    AGGREGATING = "aggregating"
    DETECTING = "detecting"
    SCORING = "scoring"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class RunState(str, Enum):
    """Orchestrator state between and during runs."""
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class FileStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class FileResult(BaseModel):
    """Outcome of one file within a run."""
    file: str
    status: FileStatus
    stage: PipelineStage = PipelineStage.PENDING
    records_ingested: int = 0
    records_stored: int = 0
    quality_report: Optional[QualityReport] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    processing_time_ms: float = 0.0


class RunResult(BaseModel):
    """Overall result of a processing run."""
    files_processed: int = Field(0, description="Files fully processed and checkpointed")
    files_skipped: int = Field(0, description="Files skipped because they were already checkpointed")
    files_failed: int = Field(0, description="Files that failed or did not finish")
    records_ingested: int = Field(0, description="Readings ingested from processed files")
    processing_time_ms: float = Field(0.0, description="Wall-clock time of the run")
    errors: List[str] = Field(default_factory=list, description="File-scoped and run-scoped errors")
    file_results: List[FileResult] = Field(default_factory=list)
    quality_report: Optional[QualityReport] = Field(None, description="Run-level quality report")
    timed_out: bool = False
    completed: bool = True
    state: RunState = RunState.IDLE


class ExportResult(BaseModel):
    """Description of an export written to disk."""
    path: str = Field(..., description="Export file, or directory for partitioned exports")
    files: List[str] = Field(default_factory=list)
    record_count: int = 0
    size_bytes: int = 0
    format: str
    compression: str
    partition_by: str
    columnar: bool = False

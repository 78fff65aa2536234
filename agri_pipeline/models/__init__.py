"""Data models for the agricultural sensor quality pipeline."""

from .data import (
    SensorReading,
    QualityFlags,
    composite_anomaly,
    TypeQualityMetrics,
    QualityReport,
    CheckpointRecord,
    CheckpointSummary,
    PipelineStage,
    RunState,
    FileStatus,
    FileResult,
    RunResult,
    ExportResult
)

__all__ = [
    "SensorReading",
    "QualityFlags",
    "composite_anomaly",
    "TypeQualityMetrics",
    "QualityReport",
    "CheckpointRecord",
    "CheckpointSummary",
    "PipelineStage",
    "RunState",
    "FileStatus",
    "FileResult",
    "RunResult",
    "ExportResult"
]

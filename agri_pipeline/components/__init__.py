"""Pipeline components for agricultural sensor quality processing."""

from .base import (
    PipelineComponent,
    IngestionComponent,
    CalibrationComponent,
    AggregationComponent,
    DetectionComponent,
    ScoringComponent,
    LoadingComponent
)

from .ingestion import ParquetIngestionComponent
from .calibration import CalibrationEngine, calibrate
from .aggregation import RollingAggregator, RollingWindow
from .detection import AnomalyDetector
from .scoring import QualityScorer
from .checkpoint import CheckpointStore
from .loading import ParquetLoadingComponent
from .query import ProcessedDataStore
from .export import DataExporter
from .summaries import SummaryTableGenerator

__all__ = [
    "PipelineComponent",
    "IngestionComponent",
    "CalibrationComponent",
    "AggregationComponent",
    "DetectionComponent",
    "ScoringComponent",
    "LoadingComponent",
    "ParquetIngestionComponent",
    "CalibrationEngine",
    "calibrate",
    "RollingAggregator",
    "RollingWindow",
    "AnomalyDetector",
    "QualityScorer",
    "CheckpointStore",
    "ParquetLoadingComponent",
    "ProcessedDataStore",
    "DataExporter",
    "SummaryTableGenerator"
]

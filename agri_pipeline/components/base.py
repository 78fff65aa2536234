"""
Abstract base classes for pipeline components.

These define the interfaces each stage of the pipeline implements, so the
orchestrator can be assembled from injected components and tested in pieces.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import pandas as pd

from agri_pipeline.config import PipelineConfig
from agri_pipeline.models import QualityReport


class PipelineComponent(ABC):
    """Base class for all pipeline components."""

    def __init__(self, config: PipelineConfig):
        """Initialize component with pipeline configuration."""
        self.config = config

    @abstractmethod
    def execute(self, *args, **kwargs) -> Any:
        """Execute the component's main functionality."""
        pass


class IngestionComponent(PipelineComponent):
    """Abstract base for raw file ingestion."""

    @abstractmethod
    def execute(self, file_path: Path) -> pd.DataFrame:
        """
        Validate and normalize a single raw file.

        Args:
            file_path: Raw file to read

        Returns:
            Normalized readings with a ``raw_value`` column
        """
        pass


class CalibrationComponent(PipelineComponent):
    """Abstract base for calibration."""

    @abstractmethod
    def execute(self, readings: pd.DataFrame) -> pd.DataFrame:
        """
        Apply calibration to normalized readings.

        Returns:
            Readings with ``calibrated_value``, ``original_value`` and ``calibration_applied``
        """
        pass


class AggregationComponent(PipelineComponent):
    """Abstract base for rolling statistics."""

    @abstractmethod
    def execute(self, calibrated: pd.DataFrame) -> pd.DataFrame:
        """
        Attach derived averages without changing stored state.

        Returns:
            Readings with ``daily_average`` added
        """
        pass

    @abstractmethod
    def commit(self, readings: pd.DataFrame) -> int:
        """
        Fold a persisted batch into the stored windows.

        Returns:
            Number of values applied
        """
        pass


class DetectionComponent(PipelineComponent):
    """Abstract base for anomaly detection."""

    @abstractmethod
    def execute(self, readings: pd.DataFrame) -> pd.DataFrame:
        """
        Flag anomalies on a batch of calibrated readings.

        Returns:
            Readings with one boolean column per check plus the composite flag
        """
        pass


class ScoringComponent(PipelineComponent):
    """Abstract base for quality scoring."""

    @abstractmethod
    def execute(self, flagged: pd.DataFrame, source: str) -> QualityReport:
        """
        Score a completed batch.

        Args:
            flagged: Readings carrying detection flags
            source: Name of the file (or run) the batch came from

        Returns:
            Immutable quality report
        """
        pass


class LoadingComponent(PipelineComponent):
    """Abstract base for persisting processed readings."""

    @abstractmethod
    def execute(self, processed: pd.DataFrame, source_file: str) -> int:
        """
        Durably store processed readings for one source file.

        Args:
            processed: Fully processed readings
            source_file: Raw file the readings came from

        Returns:
            Number of records written
        """
        pass

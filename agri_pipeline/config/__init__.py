"""Configuration models for the agricultural sensor quality pipeline."""

from .models import (
    PipelineConfig,
    CalibrationParams,
    ValueRange,
    DetectionSettings,
    ScoringSettings,
    ScoringWeights,
    CategoryBand
)

__all__ = [
    "PipelineConfig",
    "CalibrationParams",
    "ValueRange",
    "DetectionSettings",
    "ScoringSettings",
    "ScoringWeights",
    "CategoryBand"
]

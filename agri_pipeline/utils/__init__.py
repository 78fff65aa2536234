"""Utility modules for the agricultural sensor quality pipeline."""

from .logging import setup_logging, get_logger
from .exceptions import (
    PipelineError,
    ConfigurationError,
    FileValidationError,
    ComputationError,
    PersistenceError,
    PipelineTimeoutError,
    ExportError
)
from .fileio import atomic_write_text

__all__ = [
    "setup_logging",
    "get_logger",
    "atomic_write_text",
    "PipelineError",
    "ConfigurationError",
    "FileValidationError",
    "ComputationError",
    "PersistenceError",
    "PipelineTimeoutError",
    "ExportError"
]

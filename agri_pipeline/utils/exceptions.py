"""
Custom exceptions for the agricultural sensor quality pipeline.

ConfigurationError is fatal to a run. Every other error is scoped to a
single file (or, for timeouts, to the run) and is collected into the
RunResult instead of propagating to the caller.
"""


class PipelineError(Exception):
    """Base exception for all pipeline-related errors."""
    pass


class ConfigurationError(PipelineError):
    """Raised when calibration, range or pipeline configuration is invalid or missing."""
    pass


class FileValidationError(PipelineError):
    """Raised when a raw file is unreadable, empty or does not match the expected schema."""
    pass


class ComputationError(PipelineError):
    """Raised when a guarded numeric path still produces a non-finite result."""
    pass


class PersistenceError(PipelineError):
    """Raised when processed output or a report cannot be written."""
    pass


class PipelineTimeoutError(PipelineError, TimeoutError):
    """Raised when a run exceeds its time budget."""
    pass


class ExportError(PipelineError):
    """Raised when export options are invalid or the export cannot be written."""
    pass

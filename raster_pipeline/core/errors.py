"""
Error taxonomy for the raster processing pipeline.

Numeric edge cases (division by zero, log of non-positive values) are not
represented here: they resolve to no-data pixels and never raise.

Author: Diego Bengochea
"""

import warnings
from typing import Any, Dict, Optional


class RasterPipelineError(Exception):
    """Base class for all pipeline errors."""


class InputSchemaError(RasterPipelineError):
    """Referenced bands, fields or grids do not match the input schema."""


class GeometryError(RasterPipelineError):
    """Zone or bounds geometry is invalid (empty, self-intersecting, zero-area)."""


class ConfigurationError(RasterPipelineError):
    """Invalid configuration value detected at pipeline construction."""


class PipelineCancelled(RasterPipelineError):
    """Raised when a cancellation request is observed between processing steps."""


class ExternalServiceError(RasterPipelineError):
    """
    Failure of an external collaborator (tile store I/O, classifier).

    Carries the failing operation and the identifiers of its inputs so that
    callers can decide on a retry policy. Never retried inside the pipeline.
    """

    def __init__(self, operation: str, identifiers: Optional[Dict[str, Any]] = None,
                 message: Optional[str] = None):
        self.operation = operation
        self.identifiers = dict(identifiers or {})
        details = ', '.join(f"{key}={value}" for key, value in self.identifiers.items())
        text = f"{operation} failed"
        if details:
            text += f" ({details})"
        if message:
            text += f": {message}"
        super().__init__(text)


class EmptyResultWarning(UserWarning):
    """A filter, mask or zone produced zero valid samples; output is no-data."""


def report_empty_result(logger, message: str) -> None:
    """
    Log and warn about an empty result so it is distinguishable from errors.

    Args:
        logger: Component logger
        message: Description of the empty filter, mask or zone
    """
    logger.warning(f"EmptyResultWarning: {message}")
    warnings.warn(message, EmptyResultWarning, stacklevel=3)

"""
Exceptions raised by the raster engine.

Precondition failures (size, format, dimensions) are raised before any work
starts; resource failures (memory ceiling, cancellation) abort mid-run.
"""

from __future__ import annotations

from typing import Optional


class RasterEngineError(Exception):
    """Base class for every error raised by the engine."""
    pass


class InputTooLargeError(RasterEngineError):
    """Input payload exceeds the accepted byte ceiling."""
    def __init__(self, message: str, size_bytes: int, limit_bytes: int):
        super().__init__(message)
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class UnsupportedFormatError(RasterEngineError):
    """Declared MIME type or requested output format is not handled."""
    def __init__(self, message: str, format_name: Optional[str] = None):
        super().__init__(message)
        self.format_name = format_name


class DecodeError(RasterEngineError):
    """Bytes could not be decoded into a raster."""
    pass


class EncodeError(RasterEngineError):
    """Raster could not be encoded into the requested format."""
    pass


class InvalidDimensionsError(RasterEngineError):
    """Width or height is non-positive, or pixel data does not match them."""
    def __init__(self, message: str, width: Optional[int] = None, height: Optional[int] = None):
        super().__init__(message)
        self.width = width
        self.height = height


class MemoryLimitExceededError(RasterEngineError):
    """Running memory estimate went over the resource budget."""
    def __init__(self, message: str, estimated_bytes: int, limit_bytes: int):
        super().__init__(message)
        self.estimated_bytes = estimated_bytes
        self.limit_bytes = limit_bytes


class OperationCancelledError(RasterEngineError):
    """Cancellation token was set while the operation was running."""
    pass

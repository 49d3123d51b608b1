"""
binflow exception hierarchy.

All custom exceptions inherit from BinflowException so callers can
catch a single base type when they want a broad safety net.
"""


class BinflowException(Exception):
    """Base exception for all binflow errors."""


class ConfigurationError(BinflowException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


class BinningError(BinflowException):
    """Raised when the binning engine, manager or scheduler is misused."""


class BinProcessingError(BinflowException):
    """Raised by a bin processor for a recoverable per-bin failure.

    The engine routes every item of the bin to the failure relationship
    and commits the bin's session.  Any other exception raised by a
    processor causes the session to be rolled back instead.
    """


class FlowSessionError(BinflowException):
    """Raised when a session is used incorrectly (unknown item, missing
    transfer destination, etc.)."""

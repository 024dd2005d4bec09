"""Core modules for Edictflow - error taxonomy and clock helpers."""

from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import (
    AlreadyTerminal,
    ConfigurationError,
    DuplicateApproval,
    DuplicateException,
    EdictflowError,
    ExitCode,
    InvalidState,
    InvalidTransition,
    MissingComment,
    NotFound,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    # Clock
    "Clock",
    "utcnow",
    # Errors
    "ExitCode",
    "EdictflowError",
    "ConfigurationError",
    "ValidationError",
    "MissingComment",
    "NotFound",
    "InvalidState",
    "InvalidTransition",
    "AlreadyTerminal",
    "DuplicateApproval",
    "DuplicateException",
    "main_with_error_handling",
    "format_error_message",
]

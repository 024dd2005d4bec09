"""
Unified error taxonomy for the Edictflow governance core.

Every error carries a message, structured details, the HTTP status the API
surfaces it with, and the exit code CLI commands return for it.

Exit Codes:
- 0: Success
- 2: Conflict (invalid state or transition)
- 3: Not found
- 10: Configuration error
- 12: Validation error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFLICT = 2
    NOT_FOUND = 3
    CONFIG_ERROR = 10
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class EdictflowError(Exception):
    """Base exception for governance errors."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    status_code: int = 500
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(EdictflowError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(EdictflowError):
    """A required field is missing or a value is out of range. No state changed."""

    exit_code = ExitCode.VALIDATION_ERROR
    status_code = 422


class MissingComment(ValidationError):
    """A rejection was submitted without a comment."""


class NotFound(EdictflowError):
    """Unknown rule, change request, exception or category id."""

    exit_code = ExitCode.NOT_FOUND
    status_code = 404


class InvalidState(EdictflowError):
    """The entity is not in a state that permits the requested action."""

    exit_code = ExitCode.CONFLICT
    status_code = 409


class DuplicateApproval(InvalidState):
    """The user already decided on this rule in the current approval round."""


class DuplicateException(InvalidState):
    """An active exception already exists for the change request."""


class InvalidTransition(EdictflowError):
    """The transition is not an edge of the entity's state machine."""

    exit_code = ExitCode.CONFLICT
    status_code = 409


class AlreadyTerminal(InvalidTransition):
    """The entity left its source state before this transition could apply.

    Raised when a compare-and-set loses a race against a timer or another
    user. Logged rather than treated as a user-facing failure.
    """


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Exit codes:
        - EdictflowError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except EdictflowError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: EdictflowError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg

"""Exception workflow suspending enforcement on single change requests."""

from edictflow.exception_requests.service import ExceptionFiling, ExceptionService

__all__ = ["ExceptionFiling", "ExceptionService"]

"""
Exceptions

Errors raised by the workflow stream client. Malformed events never raise;
these cover transport failures and misuse of the run lifecycle.
"""

from typing import Optional


class RecruiterStreamError(Exception):
    """Base class for all recruiter stream errors."""


class WorkflowTransportError(RecruiterStreamError):
    """The workflow request could not be started or the connection failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WorkflowAlreadyRunningError(RecruiterStreamError):
    """A run was requested while another one is still generating."""


class SessionStateError(RecruiterStreamError):
    """A session token was finalized twice or never started."""


class UnknownRunError(RecruiterStreamError):
    """No retained run has the requested id."""

    def __init__(self, run_id: str):
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"Run {self.run_id} not found"

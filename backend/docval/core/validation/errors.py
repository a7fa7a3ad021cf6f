"""
Docs Validation - Errors
========================

Exception hierarchy for the validation orchestrator.

API routes translate these into HTTP responses; the pipeline records
ExecutionError on the affected page or fix and keeps going.
"""

from typing import Optional

__all__ = [
    "DocvalError",
    "StoreUnavailable",
    "SessionNotFound",
    "SessionFinished",
    "SessionConflict",
    "SelectionError",
    "RunInProgress",
    "ProvisioningError",
    "ComputeError",
    "ExecutionError",
    "AIServiceError",
]


class DocvalError(RuntimeError):
    """Base exception for validation orchestrator failures."""


class StoreUnavailable(DocvalError):
    """Raised when the session store cannot be read or written. Fatal."""


class SessionNotFound(DocvalError):
    """Raised when a session id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionFinished(DocvalError):
    """Raised when mutating work is requested on a finished session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is finished")
        self.session_id = session_id


class SessionConflict(DocvalError):
    """Raised when another active session already owns the repo and branch."""

    def __init__(self, repo: str, branch: str, existing_id: Optional[str] = None) -> None:
        message = f"An active session already exists for {repo}@{branch}"
        if existing_id:
            message += f" ({existing_id})"
        super().__init__(message)
        self.repo = repo
        self.branch = branch
        self.existing_id = existing_id


class SelectionError(DocvalError):
    """Raised when a page selection string is malformed or out of range."""


class RunInProgress(DocvalError):
    """Raised when a pipeline run is already in progress for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A run is already in progress for session {session_id}")
        self.session_id = session_id


class ProvisioningError(DocvalError):
    """Raised when sandbox compute could not be provisioned. Retryable."""

    retryable = True

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class ComputeError(DocvalError):
    """Raised when the compute backend rejects a non-provisioning operation."""


class ExecutionError(DocvalError):
    """Raised when a command inside the sandbox fails."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class AIServiceError(DocvalError):
    """Raised when the AI text service is unreachable or answers badly."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

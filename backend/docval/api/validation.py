"""
Validation API Routes
=====================

Thin HTTP front door over ValidationService. Routes only parse input and
translate domain errors; all behaviour lives in the orchestrator.

Endpoints:
- POST   /api/v1/validation/sessions                 - Start a session
- GET    /api/v1/validation/sessions                 - List sessions
- GET    /api/v1/validation/sessions/{id}            - Session status
- POST   /api/v1/validation/sessions/{id}/pages      - Discover and select pages
- POST   /api/v1/validation/sessions/{id}/run        - Start a run (background)
- POST   /api/v1/validation/sessions/{id}/feedback   - Submit reviewer feedback
- POST   /api/v1/validation/sessions/{id}/finish     - Finish the session
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from docval.core.models import SessionStatus
from docval.core.schemas import (
    DiscoverySummary,
    FeedbackResult,
    FinishResult,
    SessionSnapshot,
    StartResult,
)
from docval.core.validation.errors import (
    AIServiceError,
    DocvalError,
    ExecutionError,
    ProvisioningError,
    RunInProgress,
    SelectionError,
    SessionConflict,
    SessionFinished,
    SessionNotFound,
    StoreUnavailable,
)
from docval.core.validation.service import ValidationService

logger = structlog.get_logger()

router = APIRouter(prefix="/validation", tags=["validation"])


# ==========================================================================
# Schemas
# ==========================================================================

class StartSessionRequest(BaseModel):
    """Request to start a validation session."""
    repo: str = Field(..., min_length=1, description="Repository clone URL")
    image: Optional[str] = Field(None, description="Sandbox image override")
    branch: Optional[str] = Field(None, description="Work branch (created if missing)")


class SelectPagesRequest(BaseModel):
    """Request to select pages for validation."""
    selection: str = Field(..., description='"all", "1,3,5", "1-10" or combinations')
    run: bool = Field(False, description="Start a run right after selecting")


class FeedbackRequest(BaseModel):
    """Reviewer feedback on applied fixes."""
    text: str = Field(..., min_length=1, description="Free-text feedback")


class RunAcceptedResponse(BaseModel):
    """A run was started in the background."""
    session_id: str
    accepted: bool = True
    message: str


# ==========================================================================
# Service Singleton
# ==========================================================================

_service: Optional[ValidationService] = None


def set_validation_service(service: Optional[ValidationService]) -> None:
    global _service
    _service = service


def get_validation_service() -> ValidationService:
    """Get or create the validation service singleton."""
    global _service

    if _service is None:
        _service = ValidationService.create()
    return _service


# ==========================================================================
# Error Translation
# ==========================================================================

def http_error(exc: DocvalError) -> HTTPException:
    """Map a domain error onto an HTTP error."""
    if isinstance(exc, SessionNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (SessionFinished, SessionConflict, RunInProgress)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, SelectionError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, (ProvisioningError, StoreUnavailable)):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (ExecutionError, AIServiceError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if code >= 500:
        logger.warning("validation_request_failed", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=code, detail=str(exc))


# ==========================================================================
# Endpoints
# ==========================================================================

@router.post("/sessions", response_model=StartResult, status_code=status.HTTP_201_CREATED)
async def start_session(
    request: StartSessionRequest,
    service: ValidationService = Depends(get_validation_service),
):
    """
    Start a validation session and provision its sandbox.

    A sandbox that fails to start is reported in the body
    (outcome ``could_not_start``); the session itself is still created.
    """
    try:
        return await service.start(request.repo, image=request.image, branch=request.branch)
    except DocvalError as e:
        raise http_error(e)


@router.get("/sessions", response_model=List[SessionSnapshot])
async def list_sessions(
    status_filter: Optional[SessionStatus] = None,
    repo: Optional[str] = None,
    service: ValidationService = Depends(get_validation_service),
):
    """List sessions, optionally filtered by status or repository."""
    try:
        return await service.list_sessions(status=status_filter, repo=repo)
    except DocvalError as e:
        raise http_error(e)


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(
    session_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    """Get the status of one session."""
    try:
        return await service.status(session_id)
    except DocvalError as e:
        raise http_error(e)


@router.post("/sessions/{session_id}/pages", response_model=DiscoverySummary)
async def select_pages(
    session_id: str,
    request: SelectPagesRequest,
    service: ValidationService = Depends(get_validation_service),
):
    """Discover pages (first call only) and select which ones to validate."""
    try:
        return await service.select_pages(session_id, request.selection, run=request.run)
    except DocvalError as e:
        raise http_error(e)


@router.post(
    "/sessions/{session_id}/run",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_session(
    session_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    """Start validating the selected pages in the background."""
    try:
        await service.start_run(session_id)
    except DocvalError as e:
        raise http_error(e)
    return RunAcceptedResponse(session_id=session_id, message="Run started")


@router.post("/sessions/{session_id}/feedback", response_model=FeedbackResult)
async def submit_feedback(
    session_id: str,
    request: FeedbackRequest,
    service: ValidationService = Depends(get_validation_service),
):
    """
    Apply reviewer feedback.

    Feedback that cannot be mapped to a fix returns 200 with status
    ``clarification_needed``.
    """
    try:
        return await service.apply_feedback(session_id, request.text)
    except DocvalError as e:
        raise http_error(e)


@router.post("/sessions/{session_id}/finish", response_model=FinishResult)
async def finish_session(
    session_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    """Cancel in-flight work, delete the sandbox and mark the session finished."""
    try:
        return await service.finish(session_id)
    except DocvalError as e:
        raise http_error(e)

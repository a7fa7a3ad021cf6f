"""
Docs Validation Orchestrator - Pydantic Schemas
===============================================

The session aggregate (persisted as JSON), its parts, and the result
types returned by orchestrator operations.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from docval.core.models import (
    FeedbackAction,
    FeedbackStatus,
    FixStatus,
    IssueKind,
    IssueSeverity,
    Outcome,
    PageStatus,
    PipelineStage,
    SessionStatus,
    TargetStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:8]}"


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


# ==========================================================================
# Session Aggregate
# ==========================================================================

class ComputeRef(BaseSchema):
    """Pointer to the live sandbox bound to a session."""

    handle: str                      # Pod name
    namespace: str
    created_at: datetime = Field(default_factory=utcnow)
    vcluster_handle: Optional[str] = None
    secret_name: Optional[str] = None


class Page(BaseSchema):
    """A discovered documentation page."""

    number: int                      # 1-based discovery index, used by selections
    path: str
    title: str = ""
    status: PageStatus = PageStatus.NOT_SELECTED
    requires_cluster: bool = False
    error: Optional[str] = None


class IssueLocation(BaseSchema):
    """Where in a page an issue was found."""

    line: Optional[int] = None
    end_line: Optional[int] = None


class Issue(BaseSchema):
    """A finding, recorded whether or not it gets fixed."""

    id: str = Field(default_factory=lambda: short_id("iss"))
    page: str
    location: IssueLocation = Field(default_factory=IssueLocation)
    kind: IssueKind
    severity: IssueSeverity = IssueSeverity.MEDIUM
    description: str = ""
    excerpt: Optional[str] = None    # Flagged span as found in the page

    @property
    def sort_key(self) -> tuple[int, int]:
        line = self.location.line
        return (0, line) if line is not None else (1, 0)


class Fix(BaseSchema):
    """A recorded, reversible edit resolving one issue."""

    id: str = Field(default_factory=lambda: short_id("fix"))
    issue_id: str
    before_text: str = ""
    after_text: str = ""
    rationale: str = ""
    applied_at: datetime = Field(default_factory=utcnow)
    status: FixStatus = FixStatus.APPLIED
    reverts_fix_id: Optional[str] = None   # Set on inverse entries
    superseded_by: Optional[str] = None    # Set when amended by a newer fix
    error: Optional[str] = None

    @property
    def is_inverse(self) -> bool:
        return self.reverts_fix_id is not None


class ResultingAction(BaseSchema):
    """One action a feedback entry resolved into."""

    fix_id: str
    action: FeedbackAction
    note: str = ""
    new_fix_ids: list[str] = Field(default_factory=list)


class FeedbackEntry(BaseSchema):
    """A reviewer's free-text input plus the actions it resolved into."""

    id: str = Field(default_factory=lambda: short_id("fb"))
    timestamp: datetime = Field(default_factory=utcnow)
    raw_text: str
    target_fix_ids: list[str] = Field(default_factory=list)
    resulting_actions: list[ResultingAction] = Field(default_factory=list)


class Lifecycle(BaseSchema):
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class Session(BaseSchema):
    """
    Aggregate root of one validation run.

    The single source of truth; compute is rehydrated from it.
    """

    session_id: str
    repo: str
    branch: str
    pr_ref: Optional[str] = None
    image: Optional[str] = None
    compute_ref: Optional[ComputeRef] = None
    pages: list[Page] = Field(default_factory=list)
    selection: list[int] = Field(default_factory=list)   # Page numbers, processing order
    issues: list[Issue] = Field(default_factory=list)
    fixes: list[Fix] = Field(default_factory=list)
    feedback: list[FeedbackEntry] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    stage: PipelineStage = PipelineStage.DISCOVERING
    stage_page: Optional[str] = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self.lifecycle.status == SessionStatus.FINISHED

    def get_page(self, path: str) -> Optional[Page]:
        return next((p for p in self.pages if p.path == path), None)

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        return next((i for i in self.issues if i.id == issue_id), None)

    def get_fix(self, fix_id: str) -> Optional[Fix]:
        return next((f for f in self.fixes if f.id == fix_id), None)

    def issues_for_page(self, path: str) -> list[Issue]:
        return sorted(
            (i for i in self.issues if i.page == path),
            key=lambda i: i.sort_key,
        )

    def fixes_for_issue(self, issue_id: str) -> list[Fix]:
        return [f for f in self.fixes if f.issue_id == issue_id]

    def get_page_by_number(self, number: int) -> Optional[Page]:
        return next((p for p in self.pages if p.number == number), None)

    def pending_pages(self) -> list[Page]:
        """Selected pages not yet processed, in processing order."""
        order = {number: index for index, number in enumerate(self.selection)}
        pending = [p for p in self.pages if p.status == PageStatus.PENDING]
        return sorted(pending, key=lambda p: order.get(p.number, len(order) + p.number))

    def applied_fixes(self) -> list[Fix]:
        return [
            f for f in self.fixes
            if f.status == FixStatus.APPLIED and not f.is_inverse
        ]

    def feedback_for_fixes(self, fix_ids: set[str]) -> list[FeedbackEntry]:
        return [
            entry for entry in self.feedback
            if fix_ids.intersection(entry.target_fix_ids)
        ]


# ==========================================================================
# Operation Results
# ==========================================================================

class StartResult(BaseSchema):
    session_id: str
    outcome: Outcome
    repo: str
    branch: str
    pod_name: Optional[str] = None
    namespace: Optional[str] = None
    message: str = ""


class PageSummary(BaseSchema):
    number: int
    path: str
    title: str
    status: PageStatus


class DiscoverySummary(BaseSchema):
    session_id: str
    total_pages: int
    selected: list[PageSummary]
    pages: list[PageSummary]


class PageFailure(BaseSchema):
    path: str
    error: str


class RunReport(BaseSchema):
    """Result of one pipeline run; never a bare boolean."""

    session_id: str
    outcome: Outcome
    pages_validated: int = 0
    pages_failed: list[PageFailure] = Field(default_factory=list)
    pages_remaining: int = 0
    issues_found: int = 0
    fixes_applied: int = 0
    fixes_failed: int = 0
    pr_ref: Optional[str] = None
    message: str = ""


class TargetResult(BaseSchema):
    fix_id: str
    action: Optional[FeedbackAction] = None
    status: TargetStatus
    note: str = ""
    new_fix_ids: list[str] = Field(default_factory=list)


class FeedbackResult(BaseSchema):
    session_id: str
    status: FeedbackStatus
    message: str = ""
    entry: Optional[FeedbackEntry] = None
    targets: list[TargetResult] = Field(default_factory=list)


class FinishResult(BaseSchema):
    session_id: str
    status: SessionStatus
    pod_deleted: bool
    message: str


class SessionSnapshot(BaseSchema):
    """Status view of a session."""

    session_id: str
    repo: str
    branch: str
    status: SessionStatus
    stage: PipelineStage
    pr_ref: Optional[str]
    pod_name: Optional[str]
    pod_status: str
    vcluster: Optional[str]
    pages_total: int
    pages_selected: int
    pages_validated: int
    pages_failed: int
    issues_found: int
    fixes_applied: int
    fixes_reverted: int
    feedback_entries: int
    run_in_progress: bool = False
    last_run: Optional[RunReport] = None
    created_at: datetime
    last_activity_at: datetime


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str

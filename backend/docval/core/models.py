"""
Docs Validation Orchestrator - Database Models
==============================================

SQLAlchemy models for persisted validation sessions.

The full session aggregate lives in ``document`` as JSON; the remaining
columns are denormalised copies used for filtering (reaper sweeps, status
listings) and for optimistic concurrency control.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from docval.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class SessionStatus(str, enum.Enum):
    """Lifecycle status of a validation session."""
    ACTIVE = "active"
    FINISHED = "finished"


class PageStatus(str, enum.Enum):
    """Validation status of a documentation page."""
    NOT_SELECTED = "not-selected"
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"


class IssueKind(str, enum.Enum):
    """Category of a validation finding."""
    SYNTAX = "syntax"            # Parseable, deterministic - fixed directly
    READABILITY = "readability"  # Meaning-preserving rewrite only
    RUNTIME = "runtime"          # Command/code failed when executed
    BROKEN_LINK = "broken-link"


class IssueSeverity(str, enum.Enum):
    """Severity of a validation finding."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FixStatus(str, enum.Enum):
    """Status of a recorded fix."""
    APPLIED = "applied"
    REVERTED = "reverted"
    FAILED = "failed"     # Fix step errored inside the sandbox


class FeedbackAction(str, enum.Enum):
    """Resolved action for one feedback target."""
    REVERT = "revert"
    AMEND = "amend"
    NOOP = "noop"


class Outcome(str, enum.Enum):
    """User-visible outcome of an orchestrator operation."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"                  # Succeeded with N failures
    COULD_NOT_START = "could_not_start"
    CANCELLED = "cancelled"


class FeedbackStatus(str, enum.Enum):
    """Overall result of applying one piece of feedback."""
    APPLIED = "applied"
    PARTIAL = "partial"
    CLARIFICATION_NEEDED = "clarification_needed"
    REJECTED = "rejected"


class TargetStatus(str, enum.Enum):
    """Per-fix result of applying feedback."""
    APPLIED = "applied"
    ALREADY_REVERTED = "already_reverted"
    REFUSED = "refused"                  # Proposal repeated a rejected rewrite
    FAILED = "failed"


class PipelineStage(str, enum.Enum):
    """Validation pipeline states."""
    DISCOVERING = "discovering"
    PAGE_SELECTED = "page-selected"
    VALIDATING = "validating"
    FIXING = "fixing"
    PR_OPEN = "pr-open"
    COMPLETE = "complete"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Validation Sessions
# ==========================================================================

class ValidationSessionRecord(Base, TimestampMixin):
    """
    Durable record of one validation-and-remediation session.

    Outlives every sandbox Pod bound to it. Never deleted; finished
    sessions are retained for audit.
    """

    __tablename__ = "validation_sessions"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )  # e.g. "dvl-1729252800000-a1b2c3d4"

    repo: Mapped[str] = mapped_column(
        String(1000),
        nullable=False,
        index=True,
    )
    branch: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # Denormalised from document.compute_ref.handle (None = no live compute)
    compute_handle: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Sole input to TTL expiry
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # Set to "<repo>#<branch>" while active under the "reject" policy
    active_key: Mapped[Optional[str]] = mapped_column(
        String(1300),
        nullable=True,
        unique=True,
    )

    # Optimistic concurrency counter, bumped on every write
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    document: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ValidationSessionRecord {self.id} [{self.status.value}] v{self.version}>"

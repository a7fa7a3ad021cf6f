"""
Feedback Handler Tests
======================

Reviewer feedback resolved into revert / amend / noop against recorded
fixes, including after the session's Pod has been reaped.
"""

import asyncio

import pytest

from conftest import REPO_URL, FakeBackend, FakeRepo, FakeResolver
from docval.core.models import FeedbackAction, FeedbackStatus, FixStatus, SessionStatus, TargetStatus
from docval.core.schemas import Fix, Session
from docval.core.validation.errors import SessionFinished
from docval.core.validation.feedback import negative_context_for
from docval.core.validation.service import ValidationService

INSTALL = "docs/install.md"


# ==========================================================================
# Fixtures
# ==========================================================================

async def fixed_session(service: ValidationService) -> tuple[Session, Fix]:
    """A session that has validated docs/install.md and fixed its typo."""
    result = await service.start(REPO_URL)
    await service.select_pages(result.session_id, "2")
    await service.run(result.session_id)
    session = await service.store.load(result.session_id)
    return session, session.fixes[0]


def current_text(repo: FakeRepo, session: Session) -> str:
    return repo.text(session.compute_ref.handle, INSTALL)


# ==========================================================================
# Resolution
# ==========================================================================

class TestClarification:
    """Feedback that cannot be tied to a fix asks for clarification."""

    async def test_resolver_unsure(self, service, resolver: FakeResolver):
        session, _ = await fixed_session(service)

        result = await service.apply_feedback(session.session_id, "looks odd")

        assert result.status == FeedbackStatus.CLARIFICATION_NEEDED
        assert result.message == "Which fix?"
        assert (await service.store.load(session.session_id)).feedback == []

    async def test_unknown_fix_id(self, service, resolver: FakeResolver):
        session, _ = await fixed_session(service)
        resolver.will(("fix-00000000", FeedbackAction.REVERT))

        result = await service.apply_feedback(session.session_id, "undo fix-00000000")

        assert result.status == FeedbackStatus.CLARIFICATION_NEEDED


# ==========================================================================
# Revert
# ==========================================================================

class TestRevert:
    """REVERT applies the inverse edit and records it."""

    async def test_revert(self, service, resolver: FakeResolver, repo: FakeRepo):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.REVERT))

        result = await service.apply_feedback(session.session_id, "keep the original spelling")

        assert result.status == FeedbackStatus.APPLIED
        stored = await service.store.load(session.session_id)
        assert stored.get_fix(fix.id).status == FixStatus.REVERTED
        inverse = stored.fixes[-1]
        assert inverse.reverts_fix_id == fix.id
        assert (inverse.before_text, inverse.after_text) == ("the", "teh")
        assert result.targets[0].new_fix_ids == [inverse.id]
        assert current_text(repo, stored) == "# Install\nRun teh installer.\n"
        assert repo.pushed[INSTALL] == "# Install\nRun teh installer.\n"

        entry = stored.feedback[0]
        assert entry.raw_text == "keep the original spelling"
        assert entry.target_fix_ids == [fix.id]
        assert entry.resulting_actions[0].action == FeedbackAction.REVERT

    async def test_revert_twice(self, service, resolver: FakeResolver):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.REVERT))
        await service.apply_feedback(session.session_id, "undo")

        result = await service.apply_feedback(session.session_id, "undo it again")

        assert result.status == FeedbackStatus.REJECTED
        assert result.targets[0].status == TargetStatus.ALREADY_REVERTED
        assert len((await service.store.load(session.session_id)).feedback) == 1

    async def test_concurrent_reverts_apply_once(self, service, resolver: FakeResolver, repo: FakeRepo):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.REVERT))

        results = await asyncio.gather(
            service.apply_feedback(session.session_id, "undo"),
            service.apply_feedback(session.session_id, "undo that typo fix"),
        )

        assert [r.status for r in results] == [FeedbackStatus.APPLIED, FeedbackStatus.REJECTED]
        assert results[1].targets[0].status == TargetStatus.ALREADY_REVERTED
        stored = await service.store.load(session.session_id)
        assert [f.reverts_fix_id for f in stored.fixes if f.is_inverse] == [fix.id]
        assert len(stored.feedback) == 1
        assert repo.pushed[INSTALL] == "# Install\nRun teh installer.\n"

    async def test_revert_after_pod_reaped(self, service, resolver: FakeResolver, backend: FakeBackend, repo):
        """Compute is rebuilt on demand before the inverse edit."""
        session, fix = await fixed_session(service)
        await service.pods.release(session)
        resolver.will((fix.id, FeedbackAction.REVERT))

        result = await service.apply_feedback(session.session_id, "undo")

        assert result.status == FeedbackStatus.APPLIED
        assert len(backend.created) == 2
        stored = await service.store.load(session.session_id)
        assert stored.compute_ref.handle == backend.created[-1]
        assert repo.pushed[INSTALL] == "# Install\nRun teh installer.\n"

    async def test_never_applied_fix_refused(self, service, resolver: FakeResolver):
        session, fix = await fixed_session(service)

        def add_failed(s):
            s.fixes.append(Fix(id="fix-failed01", issue_id=fix.issue_id, before_text="x", status=FixStatus.FAILED))

        await service.store.mutate(session.session_id, add_failed)
        resolver.will(("fix-failed01", FeedbackAction.REVERT))

        result = await service.apply_feedback(session.session_id, "undo the failed one")

        assert result.status == FeedbackStatus.REJECTED
        assert result.targets[0].status == TargetStatus.REFUSED


# ==========================================================================
# Amend
# ==========================================================================

class TestAmend:
    """AMEND replaces a fix with a new rewrite that avoids rejected ones."""

    async def test_amend(self, service, resolver: FakeResolver, repo):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.AMEND))
        resolver.amendments = ["the official"]

        result = await service.apply_feedback(session.session_id, "say which installer")

        assert result.status == FeedbackStatus.APPLIED
        stored = await service.store.load(session.session_id)
        inverse, amended = stored.fixes[-2:]
        assert inverse.reverts_fix_id == fix.id
        assert amended.after_text == "the official"
        assert stored.get_fix(fix.id).status == FixStatus.REVERTED
        assert stored.get_fix(fix.id).superseded_by == amended.id
        assert current_text(repo, stored) == "# Install\nRun the official installer.\n"

        context = resolver.contexts[0]
        assert context.rejected_rewrites == ["the"]
        assert context.feedback_texts == ["say which installer"]

    async def test_negative_context_spans_lineage(self, service, resolver: FakeResolver):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.AMEND))
        resolver.amendments = ["the official"]
        await service.apply_feedback(session.session_id, "say which installer")
        amended = (await service.store.load(session.session_id)).fixes[-1]
        resolver.will((amended.id, FeedbackAction.AMEND))
        resolver.amendments = ["the bundled"]

        await service.apply_feedback(session.session_id, "still wrong")

        context = resolver.contexts[1]
        assert context.rejected_rewrites == ["the", "the official"]
        assert context.feedback_texts == ["say which installer", "still wrong"]

    async def test_repeated_rewrite_refused(self, service, resolver: FakeResolver, repo):
        session, fix = await fixed_session(service)
        resolver.will((fix.id, FeedbackAction.AMEND))
        resolver.amendments = ["  the "]

        result = await service.apply_feedback(session.session_id, "reword it")

        assert result.status == FeedbackStatus.PARTIAL
        assert result.targets[0].status == TargetStatus.REFUSED
        stored = await service.store.load(session.session_id)
        assert stored.get_fix(fix.id).status == FixStatus.APPLIED
        assert stored.feedback[0].resulting_actions[0].action == FeedbackAction.NOOP
        assert current_text(repo, stored) == "# Install\nRun the installer.\n"

    def test_negative_context_for_unfixed_issue(self):
        session = Session(session_id="dvl-1-00000000", repo=REPO_URL, branch="b")
        context = negative_context_for(session, "iss-missing", "hello")
        assert context.feedback_texts == ["hello"]
        assert context.rejected_rewrites == []


# ==========================================================================
# Noop & Lifecycle
# ==========================================================================

class TestNoopAndLifecycle:

    async def test_noop_needs_no_compute(self, service, resolver: FakeResolver, backend: FakeBackend):
        session, fix = await fixed_session(service)
        await service.pods.release(session)
        resolver.will((fix.id, FeedbackAction.NOOP))

        result = await service.apply_feedback(session.session_id, "nice fix")

        assert result.status == FeedbackStatus.APPLIED
        assert len(backend.created) == 1
        stored = await service.store.load(session.session_id)
        assert stored.compute_ref is None
        assert stored.get_fix(fix.id).status == FixStatus.APPLIED
        assert stored.feedback[0].resulting_actions[0].action == FeedbackAction.NOOP

    async def test_finished_session(self, service, resolver: FakeResolver):
        session, fix = await fixed_session(service)
        await service.store.mutate(session.session_id, lambda s: setattr(s.lifecycle, "status", SessionStatus.FINISHED))
        resolver.will((fix.id, FeedbackAction.REVERT))

        with pytest.raises(SessionFinished):
            await service.apply_feedback(session.session_id, "undo")

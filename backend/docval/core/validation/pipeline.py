"""
Validation Pipeline - State machine for validate, fix, PR.

Stages:
DISCOVERING → PAGE_SELECTED → VALIDATING(page) → FIXING(page) → PR_OPEN → COMPLETE

Every issue and fix is written to the session store as soon as it
exists, so a run that dies halfway (Pod reaped, process restarted,
session finished) resumes from the last recorded step:
- pages already validated or failed are skipped
- a pending page with recorded issues is not validated again; its
  applied fixes are re-applied idempotently and only unfixed issues get
  new fixes
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from docval.core.config import settings
from docval.core.models import FixStatus, Outcome, PageStatus, PipelineStage
from docval.core.schemas import (
    Fix,
    Issue,
    PageFailure,
    RunReport,
    Session,
)
from docval.core.validation.errors import (
    ExecutionError,
    ProvisioningError,
    SessionFinished,
)
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.report import render_report
from docval.core.validation.selection import parse_selection
from docval.core.validation.session_store import Mutation, SessionStore
from docval.core.validation.workspace import FixProposal, WorkspaceExecutor

logger = logging.getLogger(__name__)


@dataclass
class _RunCounters:
    pages_validated: int = 0
    pages_failed: list[PageFailure] = field(default_factory=list)
    issues_found: int = 0
    fixes_applied: int = 0
    fixes_failed: int = 0


class _Cancelled(Exception):
    """Internal signal: stop the run at the next checkpoint."""


def within_flagged_span(issue: Issue, proposal: FixProposal) -> bool:
    """An edit may only touch the span the validator flagged."""
    if not issue.excerpt or not proposal.before_text:
        return True
    return proposal.before_text in issue.excerpt


class ValidationPipeline:
    """
    Drives a session's executor through discovery, validation, fixing
    and the pull request.

    Holds no session state of its own; every step reads the session from
    the store and writes its result back before the next step starts.
    """

    STAGE_ORDER = [
        PipelineStage.DISCOVERING,
        PipelineStage.PAGE_SELECTED,
        PipelineStage.VALIDATING,
        PipelineStage.FIXING,
        PipelineStage.PR_OPEN,
        PipelineStage.COMPLETE,
    ]

    def __init__(self, store: SessionStore, pods: PodLifecycleManager):
        self.store = store
        self.pods = pods

    async def _update(self, session_id: str, fn: Mutation) -> Session:
        """Mutate an active session; finished sessions refuse all writes."""
        def guarded(session: Session) -> None:
            if session.is_finished:
                raise SessionFinished(session.session_id)
            fn(session)

        return await self.store.mutate(session_id, guarded)

    async def _executor(self, session: Session) -> WorkspaceExecutor:
        ref = await self.pods.ensure_compute(session)
        return self.pods.executor_for(ref)

    # ------------------------------------------------------------------
    # Discovery & Selection
    # ------------------------------------------------------------------

    async def discover(self, session_id: str) -> Session:
        """
        Discover the session's pages once; later calls return the stored list.

        Raises:
            ProvisioningError: No compute to discover with
            ExecutionError: Discovery failed inside the sandbox
        """
        session = await self.store.load(session_id)
        if session.is_finished:
            raise SessionFinished(session_id)
        if session.pages:
            return session

        executor = await self._executor(session)
        pages = await executor.discover_pages()

        def record(s: Session) -> None:
            if not s.pages:
                for page in pages:
                    page.status = PageStatus.NOT_SELECTED
                s.pages = pages
            s.stage = PipelineStage.DISCOVERING
            s.stage_page = None

        session = await self._update(session_id, record)
        logger.info(f"Discovered {len(session.pages)} pages for {session_id}")
        return session

    async def select(self, session_id: str, selection: str) -> Session:
        """
        Mark the pages named by ``selection`` pending, in selection order.

        Validated and failed pages keep their status. Pending pages left
        out of the new selection go back to not-selected.

        Raises:
            SelectionError: Malformed or out-of-range selection
        """
        session = await self.discover(session_id)
        numbers = parse_selection(selection, len(session.pages))

        def record(s: Session) -> None:
            chosen = set(numbers)
            for page in s.pages:
                if page.number in chosen and page.status == PageStatus.NOT_SELECTED:
                    page.status = PageStatus.PENDING
                elif page.number not in chosen and page.status == PageStatus.PENDING:
                    page.status = PageStatus.NOT_SELECTED
            s.selection = numbers
            s.stage = PipelineStage.PAGE_SELECTED
            s.stage_page = None

        session = await self._update(session_id, record)
        logger.info(f"Selected pages {numbers} for {session_id}")
        return session

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        session_id: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunReport:
        """
        Process every pending page, then open or update the PR.

        Execution errors are recorded on the page or fix and never abort
        the run. Returns a report rather than raising for provisioning
        failures and cancellation.
        """
        counters = _RunCounters()
        session = await self.store.load(session_id)
        if session.is_finished:
            raise SessionFinished(session_id)

        pending = session.pending_pages()
        if not pending and not session.applied_fixes() and session.pr_ref is None:
            return RunReport(
                session_id=session_id,
                outcome=Outcome.SUCCEEDED,
                message="No pending pages to validate",
            )

        try:
            executor = await self._executor(session)
        except ProvisioningError as e:
            logger.warning(f"Run for {session_id} could not start: {e}")
            return RunReport(
                session_id=session_id,
                outcome=Outcome.COULD_NOT_START,
                pages_remaining=len(pending),
                message=str(e),
            )

        try:
            for page in pending:
                self._checkpoint(cancel)
                await self._process_page(session_id, page.path, executor, counters, cancel)

            self._checkpoint(cancel)
            pr_error = await self._publish(session_id, executor)
        except (_Cancelled, SessionFinished):
            logger.info(f"Run for {session_id} cancelled")
            return await self._report(session_id, counters, Outcome.CANCELLED, "Run cancelled")

        outcome = Outcome.SUCCEEDED
        message = "Run complete"
        if counters.pages_failed or counters.fixes_failed or pr_error:
            outcome = Outcome.PARTIAL
            failures = len(counters.pages_failed) + counters.fixes_failed + (1 if pr_error else 0)
            message = f"Run complete with {failures} failure(s)"
            if pr_error:
                message += f"; pull request not updated: {pr_error}"
        return await self._report(session_id, counters, outcome, message)

    @staticmethod
    def _checkpoint(cancel: Optional[asyncio.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise _Cancelled()

    async def _report(
        self,
        session_id: str,
        counters: _RunCounters,
        outcome: Outcome,
        message: str,
    ) -> RunReport:
        session = await self.store.load(session_id)
        return RunReport(
            session_id=session_id,
            outcome=outcome,
            pages_validated=counters.pages_validated,
            pages_failed=counters.pages_failed,
            pages_remaining=len(session.pending_pages()),
            issues_found=counters.issues_found,
            fixes_applied=counters.fixes_applied,
            fixes_failed=counters.fixes_failed,
            pr_ref=session.pr_ref,
            message=message,
        )

    # ------------------------------------------------------------------
    # Per page
    # ------------------------------------------------------------------

    async def _process_page(
        self,
        session_id: str,
        path: str,
        executor: WorkspaceExecutor,
        counters: _RunCounters,
        cancel: Optional[asyncio.Event],
    ) -> None:
        def validating(s: Session) -> None:
            if s.get_page(path).status == PageStatus.PENDING:
                s.stage = PipelineStage.VALIDATING
                s.stage_page = path

        session = await self._update(session_id, validating)
        page = session.get_page(path)
        if page.status != PageStatus.PENDING:
            logger.info(f"Skipping {path}: no longer selected")
            return
        issues = session.issues_for_page(path)

        if not issues:
            try:
                found = await executor.validate_page(page)
            except ExecutionError as e:
                await self._fail_page(session_id, path, str(e), counters)
                return

            found.sort(key=lambda i: i.sort_key)

            def record_issues(s: Session) -> None:
                s.issues.extend(found)
                s.stage = PipelineStage.FIXING

            await self._update(session_id, record_issues)
            counters.issues_found += len(found)
            issues = found
        else:
            logger.info(f"Resuming {path}: {len(issues)} recorded issue(s)")

            def fixing(s: Session) -> None:
                s.stage = PipelineStage.FIXING

            await self._update(session_id, fixing)

        for issue in issues:
            self._checkpoint(cancel)
            await self._fix_issue(session_id, issue, executor, counters)

        try:
            await executor.commit_and_push(f"docs: fix issues in {path}")
        except ExecutionError as e:
            await self._fail_page(session_id, path, f"Push failed: {e}", counters)
            return

        def validated(s: Session) -> None:
            target = s.get_page(path)
            target.status = PageStatus.VALIDATED
            target.error = None

        await self._update(session_id, validated)
        counters.pages_validated += 1
        logger.info(f"Page {path} validated ({len(issues)} issue(s))")

    async def _fail_page(
        self,
        session_id: str,
        path: str,
        error: str,
        counters: _RunCounters,
    ) -> None:
        def failed(s: Session) -> None:
            target = s.get_page(path)
            target.status = PageStatus.FAILED
            target.error = error

        await self._update(session_id, failed)
        counters.pages_failed.append(PageFailure(path=path, error=error))
        logger.warning(f"Page {path} failed: {error}")

    async def _fix_issue(
        self,
        session_id: str,
        issue: Issue,
        executor: WorkspaceExecutor,
        counters: _RunCounters,
    ) -> None:
        session = await self.store.load(session_id)
        recorded = [f for f in session.fixes_for_issue(issue.id) if not f.is_inverse]
        latest = recorded[-1] if recorded else None

        if latest is not None and latest.status == FixStatus.APPLIED:
            try:
                await executor.apply_edit(
                    issue.page, latest.before_text, latest.after_text, issue.location.line
                )
            except ExecutionError as e:
                logger.warning(f"Re-applying {latest.id} failed: {e}")
            return
        if latest is not None and latest.status == FixStatus.REVERTED:
            # Reviewer rejected it; do not re-fix behind their back
            return

        try:
            proposal = await executor.propose_fix(issue)
        except ExecutionError as e:
            await self._record_fix(session_id, Fix(
                issue_id=issue.id,
                before_text=issue.excerpt or "",
                status=FixStatus.FAILED,
                error=str(e),
            ))
            counters.fixes_failed += 1
            return

        if proposal is None:
            return

        fix = Fix(
            issue_id=issue.id,
            before_text=proposal.before_text,
            after_text=proposal.after_text,
            rationale=proposal.rationale,
        )
        if not within_flagged_span(issue, proposal):
            fix.status = FixStatus.FAILED
            fix.error = "Proposed edit reaches outside the flagged span"
        else:
            try:
                await executor.apply_edit(
                    issue.page, fix.before_text, fix.after_text, issue.location.line
                )
            except ExecutionError as e:
                fix.status = FixStatus.FAILED
                fix.error = str(e)

        await self._record_fix(session_id, fix)
        if fix.status == FixStatus.APPLIED:
            counters.fixes_applied += 1
        else:
            counters.fixes_failed += 1
            logger.warning(f"Fix for {issue.id} failed: {fix.error}")

    async def _record_fix(self, session_id: str, fix: Fix) -> None:
        def record(s: Session) -> None:
            s.fixes.append(fix)

        await self._update(session_id, record)

    # ------------------------------------------------------------------
    # Pull request
    # ------------------------------------------------------------------

    async def _publish(self, session_id: str, executor: WorkspaceExecutor) -> Optional[str]:
        """Open or update the PR. Returns an error message instead of raising."""
        session = await self.store.load(session_id)
        if not session.applied_fixes() and session.pr_ref is None:
            def complete(s: Session) -> None:
                s.stage = PipelineStage.COMPLETE
                s.stage_page = None

            await self._update(session_id, complete)
            return None

        try:
            pr_ref = await executor.open_or_update_pr(
                settings.PR_TITLE,
                render_report(session),
                session.pr_ref,
            )
        except ExecutionError as e:
            logger.warning(f"PR update for {session_id} failed: {e}")
            return str(e)

        def pr_open(s: Session) -> None:
            s.pr_ref = pr_ref
            s.stage = PipelineStage.PR_OPEN
            s.stage_page = None

        await self._update(session_id, pr_open)

        def complete(s: Session) -> None:
            s.stage = PipelineStage.COMPLETE

        await self._update(session_id, complete)
        logger.info(f"PR {pr_ref} up to date for {session_id}")
        return None

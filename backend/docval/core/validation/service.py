"""
Validation Service - Orchestrator entry points
==============================================

Front door for every operation: start, select pages, run, feedback,
finish, status. Every call names its session explicitly; there is no
"current session".

Runs execute as background tasks tracked per session so that ``finish``
can hard-cancel them: it sets the session's cancel event, cancels the
task, releases compute and marks the session finished.
"""

import asyncio
from typing import Optional

import structlog

from docval.core.config import settings
from docval.core.models import FixStatus, Outcome, PageStatus, SessionStatus
from docval.core.schemas import (
    DiscoverySummary,
    FeedbackResult,
    FinishResult,
    Page,
    PageSummary,
    RunReport,
    Session,
    SessionSnapshot,
    StartResult,
    utcnow,
)
from docval.core.validation.compute import PHASE_NOT_FOUND, ComputeBackend, KubernetesBackend
from docval.core.validation.errors import (
    DocvalError,
    ProvisioningError,
    RunInProgress,
    SessionFinished,
)
from docval.core.validation.feedback import (
    AIFeedbackResolver,
    FeedbackHandler,
    FeedbackResolver,
)
from docval.core.validation.pipeline import ValidationPipeline
from docval.core.validation.pod_manager import ExecutorFactory, PodLifecycleManager
from docval.core.validation.session_store import SessionStore

logger = structlog.get_logger()


class ValidationService:
    """Orchestrator facade over the store, pod manager, pipeline and feedback."""

    def __init__(
        self,
        store: SessionStore,
        pods: PodLifecycleManager,
        pipeline: ValidationPipeline,
        feedback: FeedbackHandler,
    ):
        self.store = store
        self.pods = pods
        self.pipeline = pipeline
        self.feedback = feedback

        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._reports: dict[str, RunReport] = {}

    @classmethod
    def create(
        cls,
        backend: Optional[ComputeBackend] = None,
        resolver: Optional[FeedbackResolver] = None,
        store: Optional[SessionStore] = None,
        executor_factory: Optional[ExecutorFactory] = None,
    ) -> "ValidationService":
        """Wire the default production components."""
        store = store or SessionStore()
        pods = PodLifecycleManager(
            store,
            backend or KubernetesBackend(),
            executor_factory=executor_factory,
        )
        return cls(
            store=store,
            pods=pods,
            pipeline=ValidationPipeline(store, pods),
            feedback=FeedbackHandler(store, pods, resolver or AIFeedbackResolver()),
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        repo: str,
        image: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> StartResult:
        """
        Create a session and provision its compute.

        A provisioning failure still leaves a usable session behind; the
        result says could_not_start and later calls retry provisioning.

        Raises:
            SessionConflict: Repo and branch already have an active session
        """
        branch = branch or settings.DEFAULT_WORK_BRANCH
        session = await self.store.create(repo, branch, image)
        log = logger.bind(session_id=session.session_id)

        try:
            ref = await self.pods.ensure_compute(session)
        except ProvisioningError as e:
            log.warning("Session started without compute", error=str(e))
            return StartResult(
                session_id=session.session_id,
                outcome=Outcome.COULD_NOT_START,
                repo=repo,
                branch=branch,
                message=f"Could not start sandbox: {e}",
            )

        log.info("Session started", repo=repo, branch=branch, pod=ref.handle)
        return StartResult(
            session_id=session.session_id,
            outcome=Outcome.SUCCEEDED,
            repo=repo,
            branch=branch,
            pod_name=ref.handle,
            namespace=ref.namespace,
            message=f"Sandbox {ref.handle} ready",
        )

    # ------------------------------------------------------------------
    # Pages & Runs
    # ------------------------------------------------------------------

    async def select_pages(
        self,
        session_id: str,
        selection: str,
        run: bool = False,
    ) -> DiscoverySummary:
        """
        Discover pages if needed, apply the selection, optionally start a run.

        Raises:
            RunInProgress: A run is processing the current selection
        """
        if self.is_running(session_id):
            raise RunInProgress(session_id)
        session = await self.pipeline.select(session_id, selection)
        if run:
            self.run_in_background(session_id)

        pages = [_page_summary(p) for p in session.pages]
        by_number = {p.number: p for p in pages}
        return DiscoverySummary(
            session_id=session_id,
            total_pages=len(pages),
            selected=[by_number[n] for n in session.selection if n in by_number],
            pages=pages,
        )

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def run_in_background(self, session_id: str) -> asyncio.Task:
        """
        Start a pipeline run as a tracked background task.

        Raises:
            RunInProgress: A run is already going for this session
        """
        if self.is_running(session_id):
            raise RunInProgress(session_id)

        cancel = asyncio.Event()
        self._cancel_events[session_id] = cancel
        task = asyncio.create_task(self._run_task(session_id, cancel))
        self._tasks[session_id] = task
        return task

    async def start_run(self, session_id: str) -> asyncio.Task:
        """
        Check the session can run, then start a background run.

        Raises:
            SessionNotFound: Unknown session
            SessionFinished: Session is finished
            RunInProgress: A run is already going for this session
        """
        session = await self.store.load(session_id)
        if session.is_finished:
            raise SessionFinished(session_id)
        return self.run_in_background(session_id)

    async def run(self, session_id: str) -> RunReport:
        """Run the pipeline and wait for the report."""
        task = await self.start_run(session_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            return RunReport(
                session_id=session_id,
                outcome=Outcome.CANCELLED,
                message="Run cancelled",
            )

    async def _run_task(self, session_id: str, cancel: asyncio.Event) -> RunReport:
        log = logger.bind(session_id=session_id)
        try:
            report = await self.pipeline.run(session_id, cancel)
        except asyncio.CancelledError:
            log.info("Run task cancelled")
            raise
        except DocvalError as e:
            log.error("Run failed", error=str(e))
            report = RunReport(
                session_id=session_id,
                outcome=Outcome.COULD_NOT_START,
                message=str(e),
            )
        except Exception as e:
            log.exception("Run crashed")
            report = RunReport(
                session_id=session_id,
                outcome=Outcome.COULD_NOT_START,
                message=f"Run failed unexpectedly: {e}",
            )

        self._reports[session_id] = report
        log.info("Run finished", outcome=report.outcome.value, message=report.message)
        return report

    def last_report(self, session_id: str) -> Optional[RunReport]:
        return self._reports.get(session_id)

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def apply_feedback(self, session_id: str, text: str) -> FeedbackResult:
        return await self.feedback.apply_feedback(session_id, text)

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    async def finish(self, session_id: str) -> FinishResult:
        """
        Hard-cancel in-flight work, mark the session finished and release compute.

        The session is marked finished before its compute is released, so a
        concurrent provision cannot attach a Pod afterwards. Finishing an
        already finished session succeeds and retries a release that failed.
        """
        session = await self.store.load(session_id)
        log = logger.bind(session_id=session_id)
        already_finished = session.is_finished
        if already_finished and session.compute_ref is None:
            return FinishResult(
                session_id=session_id,
                status=SessionStatus.FINISHED,
                pod_deleted=False,
                message="Session already finished",
            )

        await self._cancel_run(session_id)

        if not already_finished:
            def mark_finished(s: Session) -> None:
                s.lifecycle.status = SessionStatus.FINISHED
                s.lifecycle.finished_at = utcnow()

            session = await self.store.mutate(session_id, mark_finished)

        pod_deleted = False
        try:
            pod_deleted = await self.pods.release(session)
        except DocvalError as e:
            # compute_ref is kept; the reaper or a repeated finish retries
            log.warning("Release during finish failed", error=str(e))

        log.info("Session finished", pod_deleted=pod_deleted)
        return FinishResult(
            session_id=session_id,
            status=SessionStatus.FINISHED,
            pod_deleted=pod_deleted,
            message=("Session already finished" if already_finished else "Session finished")
            + (", sandbox deleted" if pod_deleted else ""),
        )

    async def _cancel_run(self, session_id: str) -> None:
        cancel = self._cancel_events.pop(session_id, None)
        if cancel is not None:
            cancel.set()

        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except DocvalError as e:
                logger.warning("Cancelled run ended with error", session_id=session_id, error=str(e))

    async def shutdown(self) -> None:
        """Cancel every tracked run."""
        for session_id in list(self._tasks):
            await self._cancel_run(session_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, session_id: str) -> SessionSnapshot:
        session = await self.store.load(session_id)
        return await self._snapshot(session)

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        repo: Optional[str] = None,
    ) -> list[SessionSnapshot]:
        sessions = await self.store.list(status=status, repo=repo)
        return [await self._snapshot(s) for s in sessions]

    async def _pod_phase(self, session: Session) -> str:
        if session.compute_ref is None:
            return PHASE_NOT_FOUND
        try:
            return await self.pods.backend.sandbox_phase(session.compute_ref.handle)
        except DocvalError as e:
            logger.warning("Pod phase lookup failed", session_id=session.session_id, error=str(e))
            return "Unknown"

    async def _snapshot(self, session: Session) -> SessionSnapshot:
        pages = session.pages
        ref = session.compute_ref
        return SessionSnapshot(
            session_id=session.session_id,
            repo=session.repo,
            branch=session.branch,
            status=session.lifecycle.status,
            stage=session.stage,
            pr_ref=session.pr_ref,
            pod_name=ref.handle if ref else None,
            pod_status=await self._pod_phase(session),
            vcluster=ref.vcluster_handle if ref else None,
            pages_total=len(pages),
            pages_selected=sum(1 for p in pages if p.status != PageStatus.NOT_SELECTED),
            pages_validated=sum(1 for p in pages if p.status == PageStatus.VALIDATED),
            pages_failed=sum(1 for p in pages if p.status == PageStatus.FAILED),
            issues_found=len(session.issues),
            fixes_applied=len(session.applied_fixes()),
            fixes_reverted=sum(1 for f in session.fixes if f.status == FixStatus.REVERTED),
            feedback_entries=len(session.feedback),
            run_in_progress=self.is_running(session.session_id),
            last_run=self.last_report(session.session_id),
            created_at=session.lifecycle.created_at,
            last_activity_at=session.lifecycle.last_activity_at,
        )


def _page_summary(page: Page) -> PageSummary:
    return PageSummary(
        number=page.number,
        path=page.path,
        title=page.title,
        status=page.status,
    )

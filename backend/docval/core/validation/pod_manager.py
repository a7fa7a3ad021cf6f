"""
Pod Lifecycle Manager
=====================

Makes sure a session has live, prepared compute when work needs it, and
tears compute down when it is no longer wanted.

A session's Pod can vanish at any time (TTL reaper, node loss, manual
cleanup). ``ensure_compute`` treats that as normal: it provisions a new
Pod, prepares the workspace on the session's branch and replays every
applied fix, so the new Pod is indistinguishable from the old one.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Optional

import structlog

from docval.core.config import settings
from docval.core.models import FixStatus
from docval.core.schemas import ComputeRef, Session
from docval.core.validation.compute import ComputeBackend
from docval.core.validation.errors import (
    DocvalError,
    ExecutionError,
    ProvisioningError,
    SessionFinished,
    StoreUnavailable,
)
from docval.core.validation.session_store import SessionStore
from docval.core.validation.vcluster import VClusterProvisioner, needs_vcluster
from docval.core.validation.workspace import PodWorkspaceExecutor, WorkspaceExecutor

logger = structlog.get_logger()

ExecutorFactory = Callable[[ComputeBackend, ComputeRef], WorkspaceExecutor]


def sandbox_credentials() -> dict[str, str]:
    """Credentials mounted into every sandbox as a scoped Secret."""
    values = {
        "GIT_TOKEN": settings.GIT_TOKEN,
        "AI_API_KEY": settings.AI_API_KEY,
    }
    return {key: value for key, value in values.items() if value}


class PodLifecycleManager:
    """
    Owns ComputeRefs: creates, repairs and releases session compute.

    Calls for one session are serialised; calls for different sessions
    run concurrently.
    """

    def __init__(
        self,
        store: SessionStore,
        backend: ComputeBackend,
        vcluster: Optional[VClusterProvisioner] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        default_image: Optional[str] = None,
        credentials: Optional[dict[str, str]] = None,
    ):
        self.store = store
        self.backend = backend
        self.vcluster = vcluster or VClusterProvisioner(backend)
        self._executor_factory = executor_factory or PodWorkspaceExecutor
        self.default_image = default_image or settings.SANDBOX_IMAGE
        self._credentials = credentials
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def executor_for(self, compute_ref: ComputeRef) -> WorkspaceExecutor:
        return self._executor_factory(self.backend, compute_ref)

    # ------------------------------------------------------------------
    # Ensure
    # ------------------------------------------------------------------

    async def ensure_compute(self, session: Session) -> ComputeRef:
        """
        Return healthy compute for the session, provisioning it if needed.

        Raises:
            SessionFinished: The session is finished
            ProvisioningError: Compute could not be made ready; nothing
                was left behind and the session has no compute_ref
        """
        async with self._lock_for(session.session_id):
            current = await self.store.load(session.session_id)
            if current.is_finished:
                raise SessionFinished(current.session_id)

            ref = current.compute_ref
            if ref is not None and await self._healthy(ref):
                if needs_vcluster(current) and not ref.vcluster_handle:
                    return await self._add_vcluster(current, ref)
                return ref

            if ref is not None:
                await self._discard_stale(current, ref)

            return await self._provision(current)

    async def _healthy(self, ref: ComputeRef) -> bool:
        try:
            return await self.backend.is_healthy(ref.handle)
        except DocvalError as e:
            logger.warning("Health check failed, treating compute as gone", pod=ref.handle, error=str(e))
            return False

    async def _add_vcluster(self, session: Session, ref: ComputeRef) -> ComputeRef:
        handle = await self.vcluster.provision(ref)
        if handle is None:
            return ref

        def record(s: Session) -> None:
            if s.compute_ref is not None and s.compute_ref.handle == ref.handle:
                s.compute_ref.vcluster_handle = handle

        updated = await self.store.mutate(session.session_id, record)
        logger.info("vCluster added to existing compute", session_id=session.session_id, vcluster=handle)
        return updated.compute_ref or ref

    async def _discard_stale(self, session: Session, ref: ComputeRef) -> None:
        """Forget compute that is no longer healthy, deleting what remains of it."""
        log = logger.bind(session_id=session.session_id, pod=ref.handle)
        log.info("Compute unhealthy or gone, replacing")
        try:
            await self.vcluster.teardown(ref)
            await self.backend.delete_sandbox(ref.handle, ref.secret_name)
        except DocvalError as e:
            log.warning("Cleanup of stale compute failed", error=str(e))

        def clear(s: Session) -> None:
            if s.compute_ref is not None and s.compute_ref.handle == ref.handle:
                s.compute_ref = None

        await self.store.mutate(session.session_id, clear)

    async def _provision(self, session: Session) -> ComputeRef:
        log = logger.bind(session_id=session.session_id)
        image = session.image or self.default_image
        credentials = self._credentials if self._credentials is not None else sandbox_credentials()

        ref = await self.backend.create_sandbox(session.session_id, image, credentials)
        log = log.bind(pod=ref.handle)

        try:
            executor = self.executor_for(ref)
            await executor.prepare(session.repo, session.branch)
            await self._replay_fixes(session, executor)

            if needs_vcluster(session):
                ref.vcluster_handle = await self.vcluster.provision(ref)

            def attach(s: Session) -> None:
                if s.is_finished:
                    raise SessionFinished(s.session_id)
                s.compute_ref = ref

            await self.store.mutate(session.session_id, attach)
        except (DocvalError, asyncio.CancelledError) as e:
            log.warning("Provisioning failed, releasing new compute", error=str(e))
            await self._cleanup(ref)
            if isinstance(e, (ProvisioningError, SessionFinished, StoreUnavailable, asyncio.CancelledError)):
                raise
            raise ProvisioningError(
                f"Failed to prepare workspace in {ref.handle}: {e}",
                stage="prepare",
            ) from e

        log.info("Compute ready", image=image, vcluster=ref.vcluster_handle)
        return ref

    async def _replay_fixes(self, session: Session, executor: WorkspaceExecutor) -> None:
        """Re-apply every applied fix, in recorded order. Already-present edits are no-ops."""
        replayed = 0
        for fix in session.fixes:
            if fix.status != FixStatus.APPLIED:
                continue
            issue = session.get_issue(fix.issue_id)
            if issue is None:
                continue
            try:
                if await executor.apply_edit(
                    issue.page, fix.before_text, fix.after_text, issue.location.line
                ):
                    replayed += 1
            except ExecutionError as e:
                logger.warning("Fix replay failed", fix_id=fix.id, page=issue.page, error=str(e))
        if replayed:
            logger.info("Replayed fixes onto new compute", session_id=session.session_id, count=replayed)

    async def _cleanup(self, ref: ComputeRef) -> None:
        try:
            await self.vcluster.teardown(ref)
        except DocvalError as e:
            logger.warning("vCluster cleanup failed", pod=ref.handle, error=str(e))
        try:
            await self.backend.delete_sandbox(ref.handle, ref.secret_name)
        except DocvalError as e:
            logger.warning("Sandbox cleanup failed", pod=ref.handle, error=str(e))

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        session: Session,
        idle_before: Optional[datetime] = None,
    ) -> bool:
        """
        Delete the session's vCluster, Pod and Secret and clear compute_ref.

        Idempotent: returns False when there was nothing to release.
        With ``idle_before``, sessions active since that instant are left alone.

        Raises:
            ComputeError: Deletion failed; compute_ref is kept so a later
                release can retry
        """
        async with self._lock_for(session.session_id):
            current = await self.store.load(session.session_id)
            ref = current.compute_ref
            if ref is None:
                return False
            if idle_before is not None and current.lifecycle.last_activity_at >= idle_before:
                return False

            await self.vcluster.teardown(ref)
            await self.backend.delete_sandbox(ref.handle, ref.secret_name)

            def clear(s: Session) -> None:
                if s.compute_ref is not None and s.compute_ref.handle == ref.handle:
                    s.compute_ref = None

            await self.store.mutate(session.session_id, clear)
            logger.info("Compute released", session_id=session.session_id, pod=ref.handle)
            return True

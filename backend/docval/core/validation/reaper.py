"""
TTL Reaper
==========

Releases compute for sessions that have been idle longer than the TTL.
Only compute is reaped; session records are never deleted, so a reaped
session resumes transparently on its next request.

Each sweep re-derives its work from the store, so a restarted process
picks up exactly where the last one left off. A second pass deletes
sandbox Pods that no session references any more.
"""

import asyncio
from datetime import timedelta
from typing import Optional

import structlog

from docval.core.config import settings
from docval.core.schemas import utcnow
from docval.core.validation.compute import ComputeBackend
from docval.core.validation.errors import DocvalError
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.session_store import SessionStore

logger = structlog.get_logger()


class TTLReaper:
    """Periodic sweep of idle session compute and orphaned Pods."""

    def __init__(
        self,
        store: SessionStore,
        pods: PodLifecycleManager,
        backend: Optional[ComputeBackend] = None,
        ttl_hours: Optional[float] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.store = store
        self.pods = pods
        self.backend = backend or pods.backend
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.TTL_HOURS)
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.REAPER_INTERVAL_SECONDS
        )
        # Pods younger than this may still be mid-provisioning
        self.orphan_grace = timedelta(seconds=settings.POD_STARTUP_TIMEOUT_SECONDS * 2)

        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Reaper started", ttl_hours=self.ttl.total_seconds() / 3600, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reaper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                await self.sweep_orphans()
            except Exception as e:
                logger.error("Reaper sweep error", error=str(e))
            await asyncio.sleep(self.interval_seconds)

    async def sweep_once(self) -> list[str]:
        """
        Release compute of every session idle past the TTL.

        One failing release does not stop the sweep.

        Returns:
            Ids of sessions whose compute was released
        """
        cutoff = utcnow() - self.ttl
        expired = await self.store.list(has_compute=True, idle_before=cutoff)
        released = []

        for session in expired:
            try:
                if await self.pods.release(session, idle_before=cutoff):
                    released.append(session.session_id)
            except DocvalError as e:
                logger.warning("Reaper failed to release session", session_id=session.session_id, error=str(e))

        if released:
            logger.info("Reaper released idle compute", count=len(released), sessions=released)
        return released

    async def sweep_orphans(self) -> list[str]:
        """
        Delete sandbox Pods no session points at.

        Returns:
            Names of the deleted Pods
        """
        sandboxes = await self.backend.list_sandboxes()
        if not sandboxes:
            return []

        live = await self.store.list(has_compute=True)
        referenced = {s.compute_ref.handle for s in live if s.compute_ref}
        now = utcnow()
        deleted = []

        for sandbox in sandboxes:
            if sandbox.handle in referenced:
                continue
            if sandbox.created_at is not None and now - sandbox.created_at < self.orphan_grace:
                continue
            try:
                await self.backend.delete_sandbox(sandbox.handle)
                deleted.append(sandbox.handle)
            except DocvalError as e:
                logger.warning("Reaper failed to delete orphan pod", pod=sandbox.handle, error=str(e))

        if deleted:
            logger.info("Reaper deleted orphan pods", count=len(deleted), pods=deleted)
        return deleted

"""
Session Store - Durable validation session records.

The only durable state in the system. Pods and vClusters are disposable;
everything needed to rebuild them lives here.

Writes go through ``mutate``, which:
- serialises writers per session id with an in-process asyncio.Lock
- guards against writers in other processes with an optimistic version
  column (UPDATE ... WHERE version = n, retried on conflict)
- stamps ``lifecycle.last_activity_at`` so callers cannot bypass it
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docval.core.config import settings
from docval.core.database import AsyncSessionLocal, shares_one_connection
from docval.core.models import SessionStatus, ValidationSessionRecord
from docval.core.schemas import Session, utcnow
from docval.core.validation.errors import (
    SessionConflict,
    SessionNotFound,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

Mutation = Callable[[Session], None]


def generate_session_id() -> str:
    """Session ids look like ``dvl-<epoch ms>-<8 hex>``."""
    return f"dvl-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


class SessionStore:
    """
    Persistent store of validation sessions.

    Every public method either succeeds or raises; a failed ``mutate``
    leaves the stored record untouched.
    """

    MAX_VERSION_RETRIES = 5

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        concurrent_policy: Optional[str] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._policy = concurrent_policy or settings.CONCURRENT_SESSION_POLICY
        self._locks: dict[str, asyncio.Lock] = {}

        # One shared connection: transactions from different sessions would interleave
        bind = self._session_factory.kw.get("bind")
        self._db_lock = (
            asyncio.Lock() if bind is not None and shares_one_connection(bind) else None
        )

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[AsyncSession]:
        if self._db_lock is None:
            async with self._session_factory() as db:
                yield db
            return
        async with self._db_lock:
            async with self._session_factory() as db:
                yield db

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Create / Load
    # ------------------------------------------------------------------

    async def create(
        self,
        repo: str,
        branch: str,
        image: Optional[str] = None,
    ) -> Session:
        """
        Create and persist a new active session.

        Raises:
            SessionConflict: Another active session owns repo+branch and
                the concurrency policy is "reject"
            StoreUnavailable: Database error
        """
        session = Session(
            session_id=generate_session_id(),
            repo=repo,
            branch=branch,
            image=image,
        )
        active_key = self._active_key(repo, branch) if self._policy == "reject" else None

        try:
            async with self._db() as db:
                db.add(ValidationSessionRecord(
                    id=session.session_id,
                    repo=repo,
                    branch=branch,
                    status=SessionStatus.ACTIVE,
                    compute_handle=None,
                    last_activity_at=session.lifecycle.last_activity_at,
                    active_key=active_key,
                    version=1,
                    document=session.model_dump(mode="json"),
                ))
                await db.commit()
        except IntegrityError:
            existing = await self._find_active_id(active_key)
            raise SessionConflict(repo, branch, existing)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to create session: {e}") from e

        logger.info(f"Created session {session.session_id} for {repo}@{branch}")
        return session

    async def load(self, session_id: str) -> Session:
        """
        Load a session by id.

        Raises:
            SessionNotFound: Unknown id
            StoreUnavailable: Database error
        """
        try:
            async with self._db() as db:
                record = await db.get(ValidationSessionRecord, session_id)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to load session {session_id}: {e}") from e

        if record is None:
            raise SessionNotFound(session_id)
        return Session.model_validate(record.document)

    # ------------------------------------------------------------------
    # Mutate
    # ------------------------------------------------------------------

    async def mutate(self, session_id: str, fn: Mutation) -> Session:
        """
        Atomically read-modify-write one session.

        ``fn`` edits the loaded Session in place. If it raises, nothing
        is written and the exception propagates unchanged.

        Returns:
            The session as persisted
        """
        async with self._lock_for(session_id):
            for attempt in range(1, self.MAX_VERSION_RETRIES + 1):
                written = await self._try_mutate(session_id, fn)
                if written is not None:
                    return written
                logger.warning(
                    f"Version conflict on session {session_id} "
                    f"(attempt {attempt}/{self.MAX_VERSION_RETRIES}), retrying"
                )

        raise StoreUnavailable(
            f"Session {session_id} kept changing underneath this writer"
        )

    async def _try_mutate(self, session_id: str, fn: Mutation) -> Optional[Session]:
        """One optimistic attempt. Returns None on a version conflict."""
        try:
            async with self._db() as db:
                record = await db.get(ValidationSessionRecord, session_id)
                if record is None:
                    raise SessionNotFound(session_id)

                session = Session.model_validate(record.document)
                previous_activity = session.lifecycle.last_activity_at

                fn(session)

                session.lifecycle.last_activity_at = max(utcnow(), previous_activity)
                finished = session.lifecycle.status == SessionStatus.FINISHED

                result = await db.execute(
                    update(ValidationSessionRecord)
                    .where(
                        ValidationSessionRecord.id == session_id,
                        ValidationSessionRecord.version == record.version,
                    )
                    .values(
                        status=session.lifecycle.status,
                        compute_handle=session.compute_ref.handle if session.compute_ref else None,
                        last_activity_at=session.lifecycle.last_activity_at,
                        active_key=None if finished else record.active_key,
                        version=record.version + 1,
                        document=session.model_dump(mode="json"),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return None

                await db.commit()
                return session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to write session {session_id}: {e}") from e

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def list(
        self,
        *,
        status: Optional[SessionStatus] = None,
        has_compute: Optional[bool] = None,
        idle_before: Optional[datetime] = None,
        repo: Optional[str] = None,
    ) -> list[Session]:
        """
        List sessions matching every given filter, oldest first.

        Args:
            status: Lifecycle status
            has_compute: True for sessions with a live Pod, False for none
            idle_before: Only sessions whose last activity is older than this
            repo: Repository URL
        """
        query = select(ValidationSessionRecord)
        if status is not None:
            query = query.where(ValidationSessionRecord.status == status)
        if has_compute is True:
            query = query.where(ValidationSessionRecord.compute_handle.is_not(None))
        elif has_compute is False:
            query = query.where(ValidationSessionRecord.compute_handle.is_(None))
        if idle_before is not None:
            query = query.where(ValidationSessionRecord.last_activity_at < idle_before)
        if repo is not None:
            query = query.where(ValidationSessionRecord.repo == repo)
        query = query.order_by(ValidationSessionRecord.id)

        try:
            async with self._db() as db:
                result = await db.execute(query)
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to list sessions: {e}") from e

        return [Session.model_validate(r.document) for r in records]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _active_key(repo: str, branch: str) -> str:
        return f"{repo}#{branch}"

    async def _find_active_id(self, active_key: Optional[str]) -> Optional[str]:
        if active_key is None:
            return None
        try:
            async with self._db() as db:
                result = await db.execute(
                    select(ValidationSessionRecord.id)
                    .where(ValidationSessionRecord.active_key == active_key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError:
            logger.warning(f"Could not look up the session holding {active_key}")
            return None

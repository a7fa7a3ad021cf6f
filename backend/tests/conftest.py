"""
Docs Validation Orchestrator - Test Fixtures
============================================

Shared pytest fixtures for all tests.

Compute, the repository workspace and the feedback resolver are faked in
memory; the session store runs against a temporary SQLite file.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REAPER_ENABLED"] = "false"

import asyncio
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docval.api.main import app
from docval.api.validation import get_validation_service
from docval.core.database import build_engine, build_session_factory, create_schema
from docval.core.models import FeedbackAction, ValidationSessionRecord
from docval.core.schemas import ComputeRef, Issue, IssueLocation, Page, Session, utcnow
from docval.core.validation.compute import (
    PHASE_NOT_FOUND,
    PHASE_RUNNING,
    ComputeBackend,
    ExecResult,
    SandboxInfo,
    generate_pod_name,
)
from docval.core.validation.errors import ComputeError, ExecutionError, ProvisioningError
from docval.core.validation.feedback import (
    FeedbackHandler,
    FeedbackResolution,
    FeedbackResolver,
    NegativeContext,
    ResolvedAction,
)
from docval.core.validation.pipeline import ValidationPipeline
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.service import ValidationService
from docval.core.validation.session_store import SessionStore
from docval.core.validation.vcluster import VClusterProvisioner
from docval.core.validation.workspace import FixProposal, WorkspaceExecutor, replace_span

REPO_URL = "https://github.com/acme/docs.git"
PR_URL = "https://github.com/acme/docs/pull/7"


# ==========================================================================
# Test Database Setup
# ==========================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Provide a session factory bound to a fresh file-backed database.

    A real file gives every session its own connection, as in production.
    Creates all tables before the test, disposes the engine after.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'docval.db'}")
    await create_schema(engine)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory=session_factory)


async def backdate(
    session_factory: async_sessionmaker[AsyncSession],
    session_id: str,
    hours: float,
) -> datetime:
    """Push a session's last activity into the past, bypassing mutate()."""
    when = utcnow() - timedelta(hours=hours)
    async with session_factory() as db:
        record = await db.get(ValidationSessionRecord, session_id)
        document = dict(record.document)
        lifecycle = dict(document["lifecycle"])
        lifecycle["last_activity_at"] = when.isoformat()
        document["lifecycle"] = lifecycle
        record.document = document
        record.last_activity_at = when
        await db.commit()
    return when


# ==========================================================================
# Fake Compute
# ==========================================================================

@dataclass
class FakePod:
    session_id: str
    created_at: datetime = field(default_factory=utcnow)


class FakeBackend(ComputeBackend):
    """In-memory sandbox backend."""

    def __init__(self):
        self.namespace = "docval-test"
        self.pods: dict[str, FakePod] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.deleted_namespaces: list[str] = []
        self.commands: list[tuple[str, list[str]]] = []
        self.fail_create: Optional[str] = None
        self.fail_delete: Optional[str] = None
        self.exec_exit_code = 0

    async def create_sandbox(self, session_id, image, secret_env) -> ComputeRef:
        if self.fail_create:
            raise ProvisioningError(self.fail_create, stage="pod")
        handle = generate_pod_name()
        self.pods[handle] = FakePod(session_id=session_id)
        self.created.append(handle)
        return ComputeRef(
            handle=handle,
            namespace=self.namespace,
            secret_name=f"{handle}-credentials",
        )

    async def sandbox_phase(self, handle):
        return PHASE_RUNNING if handle in self.pods else PHASE_NOT_FOUND

    async def is_healthy(self, handle):
        return handle in self.pods

    async def exec(self, handle, command, timeout=None, stdin=None) -> ExecResult:
        if handle not in self.pods:
            raise ExecutionError(f"Pod {handle} not found")
        self.commands.append((handle, command))
        return ExecResult(exit_code=self.exec_exit_code, stdout="", stderr="boom" if self.exec_exit_code else "")

    async def delete_sandbox(self, handle, secret_name=None):
        if self.fail_delete:
            raise ComputeError(self.fail_delete)
        self.pods.pop(handle, None)
        self.deleted.append(handle)

    async def list_sandboxes(self) -> list[SandboxInfo]:
        return [
            SandboxInfo(handle=h, session_id=p.session_id, phase=PHASE_RUNNING, created_at=p.created_at)
            for h, p in self.pods.items()
        ]

    async def delete_namespace(self, name):
        self.deleted_namespaces.append(name)

    def kill(self, handle: str) -> None:
        """Simulate a Pod vanishing behind the orchestrator's back."""
        self.pods.pop(handle, None)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


# ==========================================================================
# Fake Repository Workspace
# ==========================================================================

@dataclass
class Finding:
    line: int
    kind: str
    description: str
    excerpt: str


class FakeRepo:
    """
    A remote repository plus the working copies of every sandbox.

    ``pushed`` is what the branch holds; each sandbox gets a fresh copy of
    it on prepare, so a reaped Pod loses unpushed edits.
    """

    def __init__(self):
        self.pushed: dict[str, str] = {
            "docs/install.md": "# Install\nRun teh installer.\n",
            "docs/usage.md": "# Usage\nStart the the server.\n",
            "docs/cluster.md": "# Cluster\nkubectl apply -f app.yaml\n",
        }
        self.titles = {
            "docs/install.md": "Install",
            "docs/usage.md": "Usage",
            "docs/cluster.md": "Cluster",
        }
        self.cluster_pages = {"docs/cluster.md"}
        self.findings: dict[str, list[Finding]] = {
            "docs/install.md": [Finding(2, "syntax", "Typo", "teh")],
            "docs/usage.md": [Finding(2, "readability", "Repeated word", "the the")],
            "docs/cluster.md": [],
        }
        self.proposals: dict[str, FixProposal] = {
            "teh": FixProposal("teh", "the", "Spelling"),
            "the the": FixProposal("the the", "the", "Duplicate word"),
        }
        self.workspaces: dict[str, dict[str, str]] = {}
        self.validated: list[str] = []
        self.fail_validate: set[str] = set()
        self.prepared: list[str] = []
        self.fail_prepare = False
        self.fail_push = False
        self.fail_pr = False
        self.pr_calls: list[tuple[str, Optional[str]]] = []
        self.gate: Optional[asyncio.Event] = None
        self.prepare_gate: Optional[asyncio.Event] = None

    def executor(self, backend: ComputeBackend, ref: ComputeRef) -> "FakeWorkspace":
        return FakeWorkspace(self, ref)

    def text(self, handle: str, path: str) -> str:
        return self.workspaces[handle][path]


class FakeWorkspace(WorkspaceExecutor):
    def __init__(self, repo: FakeRepo, ref: ComputeRef):
        self.repo = repo
        self.ref = ref

    @property
    def files(self) -> dict[str, str]:
        return self.repo.workspaces[self.ref.handle]

    async def prepare(self, repo, branch):
        if self.repo.fail_prepare:
            raise ExecutionError("git clone failed", exit_code=128)
        if self.repo.prepare_gate is not None:
            await self.repo.prepare_gate.wait()
        self.repo.prepared.append(branch)
        self.repo.workspaces[self.ref.handle] = dict(self.repo.pushed)

    async def discover_pages(self):
        return [
            Page(
                number=n,
                path=path,
                title=self.repo.titles[path],
                requires_cluster=path in self.repo.cluster_pages,
            )
            for n, path in enumerate(sorted(self.repo.pushed), start=1)
        ]

    async def validate_page(self, page):
        if self.repo.gate is not None:
            await self.repo.gate.wait()
        self.repo.validated.append(page.path)
        if page.path in self.repo.fail_validate:
            raise ExecutionError(f"validator crashed on {page.path}", exit_code=2)
        return [
            Issue(
                page=page.path,
                location=IssueLocation(line=f.line),
                kind=f.kind,
                description=f.description,
                excerpt=f.excerpt,
            )
            for f in self.repo.findings.get(page.path, [])
        ]

    async def propose_fix(self, issue):
        return self.repo.proposals.get(issue.excerpt)

    async def apply_edit(self, path, before, after, line_hint=None):
        new_text, changed = replace_span(self.files[path], before, after, line_hint)
        if changed:
            self.files[path] = new_text
        return changed

    async def write_file(self, path, content):
        self.files[path] = content

    async def commit_and_push(self, message):
        if self.repo.fail_push:
            raise ExecutionError("push rejected", exit_code=1)
        if self.files == self.repo.pushed:
            return False
        self.repo.pushed = dict(self.files)
        return True

    async def open_or_update_pr(self, title, body, existing_ref=None):
        if self.repo.fail_pr:
            raise ExecutionError("gh: authentication required", exit_code=4)
        self.repo.pr_calls.append((body, existing_ref))
        return existing_ref or PR_URL


@pytest.fixture
def repo() -> FakeRepo:
    return FakeRepo()


# ==========================================================================
# Fake Feedback Resolver
# ==========================================================================

class FakeResolver(FeedbackResolver):
    """Resolver driven by a test-supplied function and canned amendments."""

    def __init__(self):
        self.resolve_fn: Callable[[Session, str], FeedbackResolution] = (
            lambda session, text: FeedbackResolution(clarification="Which fix?")
        )
        self.amendments: list[str] = []
        self.contexts: list[NegativeContext] = []

    def will(self, *actions: tuple[str, FeedbackAction]) -> None:
        resolved = [ResolvedAction(fix_id=fix_id, action=action) for fix_id, action in actions]
        self.resolve_fn = lambda session, text: FeedbackResolution(actions=list(resolved))

    async def resolve(self, session, text):
        return self.resolve_fn(session, text)

    async def propose_amendment(self, fix, issue, negative_context):
        self.contexts.append(negative_context)
        return self.amendments.pop(0)


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


# ==========================================================================
# Orchestrator Fixtures
# ==========================================================================

@pytest.fixture
def pods(store, backend, repo) -> PodLifecycleManager:
    return PodLifecycleManager(
        store,
        backend,
        vcluster=VClusterProvisioner(backend, enabled=True),
        executor_factory=repo.executor,
        default_image="validator:test",
        credentials={"GIT_TOKEN": "test-token"},
    )


@pytest_asyncio.fixture
async def service(store, pods, resolver) -> AsyncGenerator[ValidationService, None]:
    svc = ValidationService(
        store=store,
        pods=pods,
        pipeline=ValidationPipeline(store, pods),
        feedback=FeedbackHandler(store, pods, resolver),
    )
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture
async def client(service: ValidationService) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client wired to the faked validation service.
    """
    app.dependency_overrides[get_validation_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def started(store: SessionStore, pods: PodLifecycleManager, branch: str = "docs-validation") -> Session:
    """Create a session and give it compute."""
    session = await store.create(REPO_URL, branch)
    await pods.ensure_compute(session)
    return await store.load(session.session_id)

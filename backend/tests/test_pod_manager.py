"""
Pod Lifecycle Manager Tests
===========================

Provisioning, repair after a Pod disappears, vClusters and release.
"""

import pytest

from conftest import REPO_URL, FakeBackend, FakeRepo, started
from docval.core.models import FixStatus, IssueKind, SessionStatus
from docval.core.schemas import Fix, Issue, IssueLocation, Page
from docval.core.validation.errors import ComputeError, ProvisioningError, SessionFinished
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.session_store import SessionStore
from docval.core.validation.vcluster import VClusterProvisioner, needs_vcluster


class TestEnsureCompute:
    """ensure_compute returns healthy, prepared compute."""

    async def test_provisions_and_records(self, store: SessionStore, pods: PodLifecycleManager, backend: FakeBackend, repo: FakeRepo):
        session = await store.create(REPO_URL, "docs-validation")

        ref = await pods.ensure_compute(session)

        assert backend.created == [ref.handle]
        assert ref.secret_name == f"{ref.handle}-credentials"
        assert repo.workspaces[ref.handle] == repo.pushed
        stored = await store.load(session.session_id)
        assert stored.compute_ref.handle == ref.handle

    async def test_reuses_healthy_compute(self, store, pods, backend):
        session = await started(store, pods)

        ref = await pods.ensure_compute(session)

        assert backend.created == [ref.handle]

    async def test_replaces_vanished_pod_and_replays_fixes(self, store, pods, backend, repo):
        """A reaped Pod comes back with every applied edit in place."""
        session = await started(store, pods)
        old = session.compute_ref.handle
        issue = Issue(
            page="docs/install.md",
            location=IssueLocation(line=2),
            kind=IssueKind.SYNTAX,
            excerpt="teh",
        )
        reverted = Fix(issue_id=issue.id, before_text="Install", after_text="Setup", status=FixStatus.REVERTED)
        applied = Fix(issue_id=issue.id, before_text="teh", after_text="the")

        def record(s):
            s.issues.append(issue)
            s.fixes.extend([reverted, applied])

        await store.mutate(session.session_id, record)
        backend.kill(old)

        ref = await pods.ensure_compute(session)

        assert ref.handle != old
        assert old in backend.deleted
        assert repo.text(ref.handle, "docs/install.md") == "# Install\nRun the installer.\n"
        assert repo.prepared == ["docs-validation", "docs-validation"]
        assert (await store.load(session.session_id)).compute_ref.handle == ref.handle

    async def test_provisioning_failure_leaves_no_compute(self, store, pods, backend):
        backend.fail_create = "quota exceeded"
        session = await store.create(REPO_URL, "docs-validation")

        with pytest.raises(ProvisioningError):
            await pods.ensure_compute(session)

        assert (await store.load(session.session_id)).compute_ref is None
        assert backend.pods == {}

    async def test_prepare_failure_deletes_new_pod(self, store, pods, backend, repo):
        repo.fail_prepare = True
        session = await store.create(REPO_URL, "docs-validation")

        with pytest.raises(ProvisioningError) as exc_info:
            await pods.ensure_compute(session)

        assert exc_info.value.stage == "prepare"
        assert backend.pods == {}
        assert backend.deleted == backend.created
        assert (await store.load(session.session_id)).compute_ref is None

    async def test_finished_session_refused(self, store, pods, backend):
        session = await store.create(REPO_URL, "docs-validation")
        await store.mutate(session.session_id, lambda s: setattr(s.lifecycle, "status", SessionStatus.FINISHED))

        with pytest.raises(SessionFinished):
            await pods.ensure_compute(session)

        assert backend.created == []


class TestVCluster:
    """Sessions with cluster-level pages get a nested control plane."""

    async def test_cluster_page_triggers_vcluster(self, store, pods, backend):
        session = await started(store, pods)
        ref = session.compute_ref

        def discover(s):
            s.pages = [Page(number=1, path="docs/cluster.md", requires_cluster=True)]

        session = await store.mutate(session.session_id, discover)
        assert needs_vcluster(session)

        updated = await pods.ensure_compute(session)

        assert updated.handle == ref.handle
        assert updated.vcluster_handle == f"vc-{ref.handle}"
        assert any("vcluster create" in cmd[-1] for _, cmd in backend.commands)

    async def test_issue_text_triggers_vcluster(self, store, pods):
        session = await started(store, pods)

        def record(s):
            s.issues.append(Issue(page="docs/a.md", kind=IssueKind.RUNTIME, description="helm install failed"))

        session = await store.mutate(session.session_id, record)

        assert needs_vcluster(session)

    async def test_vcluster_failure_is_provisioning_error(self, store, backend):
        backend.exec_exit_code = 1
        provisioner = VClusterProvisioner(backend, enabled=True)
        session = await store.create(REPO_URL, "docs-validation")
        ref = await backend.create_sandbox(session.session_id, "img", {})

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision(ref)

        assert exc_info.value.stage == "vcluster"
        assert backend.deleted_namespaces == [f"vc-{ref.handle}"]

    async def test_disabled_provisioner_returns_none(self, backend):
        ref = await backend.create_sandbox("dvl-1-00000000", "img", {})
        assert await VClusterProvisioner(backend, enabled=False).provision(ref) is None
        assert backend.commands == []


class TestRelease:
    """release deletes compute and is idempotent."""

    async def test_release_twice(self, store, pods, backend):
        session = await started(store, pods)
        handle = session.compute_ref.handle

        assert await pods.release(session) is True
        assert await pods.release(session) is False

        assert backend.deleted == [handle]
        assert (await store.load(session.session_id)).compute_ref is None

    async def test_release_tears_down_vcluster(self, store, pods, backend):
        session = await started(store, pods)

        def discover(s):
            s.pages = [Page(number=1, path="docs/cluster.md", requires_cluster=True)]

        session = await store.mutate(session.session_id, discover)
        ref = await pods.ensure_compute(session)

        await pods.release(session)

        assert backend.deleted_namespaces == [ref.vcluster_handle]
        assert any("vcluster delete" in cmd[-1] for _, cmd in backend.commands)

    async def test_release_skips_recently_active(self, store, pods, backend):
        session = await started(store, pods)

        released = await pods.release(session, idle_before=session.lifecycle.created_at)

        assert released is False
        assert backend.deleted == []

    async def test_delete_failure_keeps_compute_ref(self, store, pods, backend):
        session = await started(store, pods)
        backend.fail_delete = "forbidden"

        with pytest.raises(ComputeError):
            await pods.release(session)

        assert (await store.load(session.session_id)).compute_ref is not None

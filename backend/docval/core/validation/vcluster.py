"""
vCluster Provisioner - Nested control planes for cluster-level docs.

Pages that tell the reader to run kubectl, helm and friends cannot be
validated against the host cluster. For those sessions a vCluster is
created from inside the sandbox and the sandbox kubeconfig is pointed at
it, so every cluster command the validator runs lands in the nested
control plane.
"""

import logging
import re
import shlex
from typing import Optional

from docval.core.config import settings
from docval.core.schemas import ComputeRef, Session
from docval.core.validation.compute import ComputeBackend
from docval.core.validation.errors import DocvalError, ProvisioningError

logger = logging.getLogger(__name__)


CLUSTER_COMMAND_PATTERN = re.compile(r"\b(kubectl|helm|kustomize|vcluster)\b")


def mentions_cluster_commands(text: Optional[str]) -> bool:
    return bool(text) and CLUSTER_COMMAND_PATTERN.search(text) is not None


def needs_vcluster(session: Session) -> bool:
    """True if any page or recorded issue involves cluster-level commands."""
    if any(page.requires_cluster for page in session.pages):
        return True
    return any(
        mentions_cluster_commands(issue.description) or mentions_cluster_commands(issue.excerpt)
        for issue in session.issues
    )


def vcluster_name(compute_ref: ComputeRef) -> str:
    return f"vc-{compute_ref.handle}"


class VClusterProvisioner:
    """Creates and tears down the vCluster bound to a session's sandbox."""

    def __init__(self, backend: ComputeBackend, enabled: Optional[bool] = None):
        self.backend = backend
        self.enabled = settings.VCLUSTER_ENABLED if enabled is None else enabled

    async def provision(self, compute_ref: ComputeRef) -> Optional[str]:
        """
        Create a vCluster and connect the sandbox to it.

        Returns:
            The vCluster handle, or None when vClusters are disabled

        Raises:
            ProvisioningError: vCluster could not be created; anything
                half-created has been removed
        """
        if not self.enabled:
            logger.warning(
                f"vCluster required for {compute_ref.handle} but disabled; "
                "cluster commands will run without isolation"
            )
            return None

        name = vcluster_name(compute_ref)
        quoted = shlex.quote(name)
        script = " && ".join([
            f"vcluster create {quoted} --namespace {quoted} --connect=false --upgrade",
            f"vcluster connect {quoted} --namespace {quoted} --update-current=true",
            "kubectl version",
        ])

        try:
            result = await self.backend.exec(
                compute_ref.handle,
                ["sh", "-c", script],
                timeout=settings.VCLUSTER_STARTUP_TIMEOUT_SECONDS,
            )
        except DocvalError as e:
            await self._discard(compute_ref, name)
            raise ProvisioningError(f"Failed to create vCluster {name}: {e}", stage="vcluster") from e

        if not result.ok:
            await self._discard(compute_ref, name)
            raise ProvisioningError(
                f"Failed to create vCluster {name}: {result.stderr.strip()[:500]}",
                stage="vcluster",
            )

        logger.info(f"vCluster {name} ready for {compute_ref.handle}")
        return name

    async def teardown(self, compute_ref: ComputeRef) -> None:
        """
        Delete the session's vCluster, if any.

        Uses the vcluster CLI while the sandbox is alive; otherwise the
        vCluster namespace is deleted directly.
        """
        name = compute_ref.vcluster_handle
        if not name:
            return

        if await self.backend.is_healthy(compute_ref.handle):
            result = await self.backend.exec(
                compute_ref.handle,
                ["sh", "-c", f"vcluster delete {shlex.quote(name)} --namespace {shlex.quote(name)}"],
                timeout=settings.VCLUSTER_STARTUP_TIMEOUT_SECONDS,
            )
            if not result.ok:
                logger.warning(f"vcluster delete {name} failed: {result.stderr.strip()[:200]}")

        # Removes anything the CLI left behind, and everything if it never ran
        await self.backend.delete_namespace(name)
        logger.info(f"vCluster {name} deleted")

    async def _discard(self, compute_ref: ComputeRef, name: str) -> None:
        try:
            await self.backend.delete_namespace(name)
        except DocvalError as e:
            logger.warning(f"Cleanup of vCluster {name} failed: {e}")

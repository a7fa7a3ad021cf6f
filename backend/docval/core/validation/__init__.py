"""
Docs Validation Orchestrator
============================

Validates a repository's documentation page by page inside a disposable
Kubernetes sandbox, fixes what it finds, opens a pull request and
replays reviewer feedback against the recorded fixes.

Components:
- SessionStore: Durable session records (the only durable state)
- KubernetesBackend: Sandbox Pods and scoped Secrets
- PodLifecycleManager: Creates, repairs and releases session compute
- VClusterProvisioner: Nested control planes for cluster-level pages
- ValidationPipeline: Discover, select, validate, fix, PR
- FeedbackHandler: Revert / amend / noop from reviewer text
- TTLReaper: Releases compute of idle sessions
- ValidationService: Front door tying it all together
"""

from docval.core.validation.compute import ComputeBackend, KubernetesBackend
from docval.core.validation.feedback import AIFeedbackResolver, FeedbackHandler, FeedbackResolver
from docval.core.validation.pipeline import ValidationPipeline
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.reaper import TTLReaper
from docval.core.validation.service import ValidationService
from docval.core.validation.session_store import SessionStore
from docval.core.validation.vcluster import VClusterProvisioner
from docval.core.validation.workspace import PodWorkspaceExecutor, WorkspaceExecutor

__all__ = [
    "AIFeedbackResolver",
    "ComputeBackend",
    "FeedbackHandler",
    "FeedbackResolver",
    "KubernetesBackend",
    "PodLifecycleManager",
    "PodWorkspaceExecutor",
    "SessionStore",
    "TTLReaper",
    "VClusterProvisioner",
    "ValidationPipeline",
    "ValidationService",
    "WorkspaceExecutor",
]

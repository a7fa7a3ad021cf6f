"""
Compute Backend - Sandboxed Pods for validation sessions
========================================================

One Pod per live session, with a scoped Secret carrying the credentials
the workspace needs. Pods are disposable; their absence is a normal
state that the Pod Lifecycle Manager repairs on demand.

The kubernetes client is synchronous, so every call is pushed onto a
worker thread with ``asyncio.to_thread``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from websocket import WebSocketException

from docval.core.config import settings
from docval.core.schemas import ComputeRef
from docval.core.validation.errors import (
    ComputeError,
    ExecutionError,
    ProvisioningError,
)

logger = structlog.get_logger()


MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "docval"
TOOL_LABEL = "docval/tool"
TOOL_VALUE = "docs-validation"
SESSION_LABEL = "docval/session-id"

SANDBOX_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{TOOL_LABEL}={TOOL_VALUE}"

# Phases reported by sandbox_phase()
PHASE_RUNNING = "Running"
PHASE_PENDING = "Pending"
PHASE_NOT_FOUND = "NotFound"
PHASE_TERMINATED = "Terminated"


def generate_pod_name() -> str:
    return f"dvl-{uuid4().hex[:8]}"


@dataclass
class ExecResult:
    """Result of one command executed inside a sandbox."""
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class SandboxInfo:
    """A sandbox Pod as seen by the cluster."""
    handle: str
    session_id: Optional[str]
    phase: str
    created_at: Optional[datetime] = None


# ==========================================================================
# Compute Backend Interface
# ==========================================================================

class ComputeBackend(ABC):
    """Abstract interface for sandbox compute."""

    namespace: str

    @abstractmethod
    async def create_sandbox(
        self,
        session_id: str,
        image: str,
        secret_env: dict[str, str],
    ) -> ComputeRef:
        """
        Create a sandbox and wait until it is ready.

        Every resource created here is removed again if creation fails.

        Raises:
            ProvisioningError: Sandbox could not be made ready
        """
        pass

    @abstractmethod
    async def sandbox_phase(self, handle: str) -> str:
        """Running, Pending, NotFound or Terminated."""
        pass

    @abstractmethod
    async def is_healthy(self, handle: str) -> bool:
        """Check if the sandbox exists and can run commands."""
        pass

    @abstractmethod
    async def exec(
        self,
        handle: str,
        command: list[str],
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> ExecResult:
        """
        Run a command inside the sandbox.

        A non-zero exit code is returned, not raised.

        Raises:
            ExecutionError: The command could not be run or timed out
        """
        pass

    @abstractmethod
    async def delete_sandbox(self, handle: str, secret_name: Optional[str] = None) -> None:
        """Delete the sandbox and its secret. Missing resources are ignored."""
        pass

    @abstractmethod
    async def list_sandboxes(self) -> list[SandboxInfo]:
        """List every sandbox this service manages."""
        pass

    @abstractmethod
    async def delete_namespace(self, name: str) -> None:
        """Delete a namespace created for a session. Missing is ignored."""
        pass


# ==========================================================================
# Kubernetes Backend
# ==========================================================================

class KubernetesBackend(ComputeBackend):
    """
    Sandbox compute backed by Kubernetes Pods.

    Pods run ``sleep infinity`` with restartPolicy Never; work happens
    through exec. Credentials are mounted from a per-pod Secret so a
    deleted pod takes its credentials with it.
    """

    def __init__(
        self,
        namespace: Optional[str] = None,
        in_cluster: Optional[bool] = None,
    ):
        self.namespace = namespace or settings.K8S_NAMESPACE
        self._in_cluster = settings.K8S_IN_CLUSTER if in_cluster is None else in_cluster
        self._core_api: Optional[client.CoreV1Api] = None
        self._stream_core_api: Optional[client.CoreV1Api] = None

    def _ensure_clients(self) -> None:
        """Load cluster configuration on first use."""
        if self._core_api is not None:
            return

        try:
            if self._in_cluster is False:
                config.load_kube_config()
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    if self._in_cluster:
                        raise
                    config.load_kube_config()
        except config.ConfigException as e:
            raise ProvisioningError(
                f"Failed to load Kubernetes configuration: {e}",
                stage="config",
            ) from e

        # kubernetes.stream patches the ApiClient it is given, so exec
        # must not share a client with the REST calls.
        self._core_api = client.CoreV1Api(api_client=client.ApiClient())
        self._stream_core_api = client.CoreV1Api(api_client=client.ApiClient())
        logger.info("Kubernetes backend initialized", namespace=self.namespace)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_sandbox(
        self,
        session_id: str,
        image: str,
        secret_env: dict[str, str],
    ) -> ComputeRef:
        return await asyncio.to_thread(self._create_sandbox, session_id, image, secret_env)

    def _create_sandbox(
        self,
        session_id: str,
        image: str,
        secret_env: dict[str, str],
    ) -> ComputeRef:
        self._ensure_clients()
        self._ensure_namespace()

        pod_name = generate_pod_name()
        secret_name = f"{pod_name}-credentials"
        log = logger.bind(session_id=session_id, pod=pod_name)

        try:
            self._core_api.create_namespaced_secret(
                namespace=self.namespace,
                body=self._build_secret(secret_name, session_id, secret_env),
            )
            self._core_api.create_namespaced_pod(
                namespace=self.namespace,
                body=self._build_pod(pod_name, secret_name, session_id, image, list(secret_env)),
            )
            log.info("Sandbox pod created, waiting for ready", image=image)
            self._wait_for_pod_ready(pod_name)
        except (ApiException, ProvisioningError) as e:
            log.warning("Sandbox provisioning failed, cleaning up", error=str(e))
            self._delete_resources(pod_name, secret_name)
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(
                f"Failed to create sandbox {pod_name}: {e.reason}",
                stage="pod",
            ) from e

        log.info("Sandbox pod ready")
        return ComputeRef(
            handle=pod_name,
            namespace=self.namespace,
            secret_name=secret_name,
        )

    def _ensure_namespace(self) -> None:
        try:
            self._core_api.read_namespace(name=self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise ProvisioningError(
                    f"Failed to read namespace {self.namespace}: {e.reason}",
                    stage="namespace",
                ) from e
            try:
                self._core_api.create_namespace(
                    body=client.V1Namespace(
                        metadata=client.V1ObjectMeta(
                            name=self.namespace,
                            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                        )
                    )
                )
                logger.info("Created namespace", namespace=self.namespace)
            except ApiException as create_e:
                # 409: created concurrently
                if create_e.status != 409:
                    raise ProvisioningError(
                        f"Failed to create namespace {self.namespace}: {create_e.reason}",
                        stage="namespace",
                    ) from create_e

    def _labels(self, session_id: str) -> dict[str, str]:
        return {
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
            TOOL_LABEL: TOOL_VALUE,
            SESSION_LABEL: session_id,
        }

    def _build_secret(
        self,
        secret_name: str,
        session_id: str,
        secret_env: dict[str, str],
    ) -> client.V1Secret:
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=client.V1ObjectMeta(
                name=secret_name,
                namespace=self.namespace,
                labels=self._labels(session_id),
            ),
            type="Opaque",
            string_data=secret_env,
        )

    def _build_pod(
        self,
        pod_name: str,
        secret_name: str,
        session_id: str,
        image: str,
        secret_keys: list[str],
    ) -> client.V1Pod:
        env = [
            client.V1EnvVar(
                name=key,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(
                        name=secret_name,
                        key=key,
                        optional=True,
                    )
                ),
            )
            for key in secret_keys
        ]
        env.append(client.V1EnvVar(name="DOCVAL_SESSION_ID", value=session_id))

        container = client.V1Container(
            name=settings.SANDBOX_CONTAINER_NAME,
            image=image,
            image_pull_policy="IfNotPresent",
            command=["sleep", "infinity"],
            env=env,
            resources=client.V1ResourceRequirements(
                requests={
                    "cpu": settings.SANDBOX_CPU_REQUEST,
                    "memory": settings.SANDBOX_MEMORY_REQUEST,
                },
                limits={
                    "cpu": settings.SANDBOX_CPU_LIMIT,
                    "memory": settings.SANDBOX_MEMORY_LIMIT,
                },
            ),
            security_context=client.V1SecurityContext(
                allow_privilege_escalation=False,
                privileged=False,
            ),
        )

        return client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(
                name=pod_name,
                namespace=self.namespace,
                labels=self._labels(session_id),
            ),
            spec=client.V1PodSpec(
                containers=[container],
                restart_policy="Never",
                termination_grace_period_seconds=10,
                enable_service_links=False,
            ),
        )

    def _wait_for_pod_ready(self, pod_name: str) -> None:
        """
        Poll until the pod is Running and Ready.

        Raises:
            ProvisioningError: Pod failed, vanished, or missed the startup budget
        """
        timeout = settings.POD_STARTUP_TIMEOUT_SECONDS
        start_time = time.monotonic()

        while time.monotonic() - start_time < timeout:
            try:
                pod = self._core_api.read_namespaced_pod(
                    name=pod_name,
                    namespace=self.namespace,
                )
            except ApiException as e:
                if e.status == 404:
                    raise ProvisioningError(f"Pod {pod_name} was deleted", stage="ready")
                logger.warning("Error checking pod status", pod=pod_name, error=str(e))
            else:
                phase = pod.status.phase if pod.status else None
                if phase in ("Failed", "Succeeded"):
                    raise ProvisioningError(
                        f"Pod {pod_name} stopped during startup (phase {phase})",
                        stage="ready",
                    )
                if phase == "Running" and _is_ready(pod):
                    return

            time.sleep(settings.POD_READY_POLL_INTERVAL_SECONDS)

        raise ProvisioningError(
            f"Pod {pod_name} not ready after {timeout}s",
            stage="ready",
        )

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    async def sandbox_phase(self, handle: str) -> str:
        return await asyncio.to_thread(self._sandbox_phase, handle)

    def _sandbox_phase(self, handle: str) -> str:
        self._ensure_clients()
        try:
            pod = self._core_api.read_namespaced_pod(name=handle, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return PHASE_NOT_FOUND
            raise ComputeError(f"Failed to read pod {handle}: {e.reason}") from e
        return _phase_of(pod)

    async def is_healthy(self, handle: str) -> bool:
        return await asyncio.to_thread(self._is_healthy, handle)

    def _is_healthy(self, handle: str) -> bool:
        self._ensure_clients()
        try:
            pod = self._core_api.read_namespaced_pod(name=handle, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise ComputeError(f"Failed to read pod {handle}: {e.reason}") from e
        if pod.metadata.deletion_timestamp is not None:
            return False
        return pod.status is not None and pod.status.phase == "Running" and _is_ready(pod)

    async def list_sandboxes(self) -> list[SandboxInfo]:
        return await asyncio.to_thread(self._list_sandboxes)

    def _list_sandboxes(self) -> list[SandboxInfo]:
        self._ensure_clients()
        try:
            pods = self._core_api.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=SANDBOX_SELECTOR,
            )
        except ApiException as e:
            if e.status == 404:
                return []
            raise ComputeError(f"Failed to list sandbox pods: {e.reason}") from e

        return [
            SandboxInfo(
                handle=pod.metadata.name,
                session_id=(pod.metadata.labels or {}).get(SESSION_LABEL),
                phase=_phase_of(pod),
                created_at=pod.metadata.creation_timestamp,
            )
            for pod in pods.items
        ]

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def exec(
        self,
        handle: str,
        command: list[str],
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> ExecResult:
        return await asyncio.to_thread(
            self._exec,
            handle,
            command,
            timeout or settings.EXEC_TIMEOUT_SECONDS,
            stdin,
        )

    def _exec(
        self,
        handle: str,
        command: list[str],
        timeout: float,
        stdin: Optional[str],
    ) -> ExecResult:
        self._ensure_clients()
        try:
            ws_client = k8s_stream(
                self._stream_core_api.connect_get_namespaced_pod_exec,
                name=handle,
                namespace=self.namespace,
                container=settings.SANDBOX_CONTAINER_NAME,
                command=command,
                stdin=stdin is not None,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ExecutionError(f"Failed to exec in pod {handle}: {e.reason}") from e
        except (WebSocketException, OSError) as e:
            raise ExecutionError(f"Failed to exec in pod {handle}: {e}") from e

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        deadline = time.monotonic() + timeout
        try:
            if stdin is not None:
                ws_client.write_stdin(stdin)

            while ws_client.is_open():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ExecutionError(
                        f"Command timed out after {timeout}s: {command[0]}",
                        stderr="".join(stderr_parts),
                    )
                ws_client.update(timeout=min(remaining, 1.0))
                if ws_client.peek_stdout():
                    stdout_parts.append(ws_client.read_stdout())
                if ws_client.peek_stderr():
                    stderr_parts.append(ws_client.read_stderr())

            stdout_parts.append(ws_client.read_stdout() or "")
            stderr_parts.append(ws_client.read_stderr() or "")
            returncode = ws_client.returncode
        except (ApiException, WebSocketException, OSError, ValueError) as e:
            raise ExecutionError(
                f"Exec stream to pod {handle} failed: {e}",
                stderr="".join(stderr_parts),
            ) from e
        finally:
            ws_client.close()

        return ExecResult(
            exit_code=returncode if returncode is not None else -1,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
        )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_sandbox(self, handle: str, secret_name: Optional[str] = None) -> None:
        await asyncio.to_thread(self._delete_sandbox, handle, secret_name)

    def _delete_sandbox(self, handle: str, secret_name: Optional[str]) -> None:
        self._ensure_clients()
        errors = self._delete_resources(handle, secret_name or f"{handle}-credentials")
        if errors:
            raise ComputeError("; ".join(errors))
        logger.info("Sandbox deleted", pod=handle)

    async def delete_namespace(self, name: str) -> None:
        await asyncio.to_thread(self._delete_namespace, name)

    def _delete_namespace(self, name: str) -> None:
        self._ensure_clients()
        try:
            self._core_api.delete_namespace(name=name)
        except ApiException as e:
            if e.status != 404:
                raise ComputeError(f"Failed to delete namespace {name}: {e.reason}") from e
        logger.info("Namespace deleted", namespace=name)

    def _delete_resources(self, pod_name: str, secret_name: str) -> list[str]:
        """Best-effort delete of a pod and its secret. Returns error messages."""
        errors = []
        try:
            self._core_api.delete_namespaced_pod(
                name=pod_name,
                namespace=self.namespace,
                grace_period_seconds=0,
            )
        except ApiException as e:
            if e.status != 404:
                errors.append(f"pod {pod_name}: {e.reason}")
                logger.warning("Error deleting pod", pod=pod_name, error=str(e))

        try:
            self._core_api.delete_namespaced_secret(
                name=secret_name,
                namespace=self.namespace,
            )
        except ApiException as e:
            if e.status != 404:
                errors.append(f"secret {secret_name}: {e.reason}")
                logger.warning("Error deleting secret", secret=secret_name, error=str(e))

        return errors


def _is_ready(pod: client.V1Pod) -> bool:
    for condition in pod.status.conditions or []:
        if condition.type == "Ready" and condition.status == "True":
            return True
    return False


def _phase_of(pod: client.V1Pod) -> str:
    phase = pod.status.phase if pod.status else None
    if pod.metadata.deletion_timestamp is not None or phase in ("Succeeded", "Failed"):
        return PHASE_TERMINATED
    if phase == "Running":
        return PHASE_RUNNING
    return PHASE_PENDING

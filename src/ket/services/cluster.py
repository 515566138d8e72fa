"""Kubernetes gateway used by the launcher.

A thin layer over the official client: each method is one cluster action,
API failures surface as ``ClusterError``, and no retries happen here.
Retry and polling policy belongs to the launcher.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ket.core.errors import ClusterError
from ket.models.k8s import JobInfo, JobStatus
from ket.services.manifests import (
    CONTAINER_NAME,
    build_role,
    build_role_binding,
    build_service_account,
)

if TYPE_CHECKING:
    from kubernetes.client import (
        BatchV1Api,
        CoreV1Api,
        RbacAuthorizationV1Api,
        V1ConfigMap,
        V1Job,
        V1Pod,
    )
    from urllib3 import HTTPResponse

logger = logging.getLogger(__name__)


def job_pod_selector(job_name: str) -> str:
    """Label selector matching the pods the Job controller creates."""
    return f"job-name={job_name}"


def describe_pod_status(pod: V1Pod) -> str:
    """Short human-readable status of a pod's first container."""
    statuses = pod.status.container_statuses if pod.status else None
    if not statuses:
        return "ContainerCreating"

    state = statuses[0].state
    if state is None:
        return "Unknown"
    if state.waiting is not None:
        if state.waiting.reason == "ContainerCreating":
            return "ContainerCreating"
        return f"Waiting: {state.waiting.reason}"
    if state.running is not None:
        return "Running"
    if state.terminated is not None:
        return f"Terminated: {state.terminated.reason}"
    return "Unknown"


def is_pod_ready_for_logs(pod: V1Pod) -> bool:
    """Whether the pod's first container is running and ready."""
    statuses = pod.status.container_statuses if pod.status else None
    if not statuses:
        return False
    status = statuses[0]
    return bool(status.state and status.state.running is not None and status.ready)


def has_pod_terminated(pod: V1Pod) -> bool:
    """Whether the first container already terminated; its logs are still readable."""
    statuses = pod.status.container_statuses if pod.status else None
    if not statuses or statuses[0].state is None:
        return False
    return statuses[0].state.terminated is not None


def _pod_created_at(pod: V1Pod) -> float:
    created = pod.metadata.creation_timestamp if pod.metadata else None
    return created.timestamp() if created else 0.0


def latest_pod(pods: list[V1Pod]) -> V1Pod:
    """The most recently created pod; with Job retries there can be several."""
    return max(pods, key=_pod_created_at)


def determine_job_status(job: V1Job) -> JobStatus:
    """Determine the JobStatus from a V1Job object."""
    if not job.status:
        return JobStatus.PENDING

    if job.status.conditions:
        for condition in job.status.conditions:
            if condition.type == "Complete" and condition.status == "True":
                return JobStatus.SUCCEEDED
            if condition.type == "Failed" and condition.status == "True":
                return JobStatus.FAILED

    if job.status.succeeded and job.status.succeeded > 0:
        return JobStatus.SUCCEEDED
    if job.status.failed and job.status.failed > 0:
        return JobStatus.FAILED
    if job.status.active and job.status.active > 0:
        return JobStatus.RUNNING

    return JobStatus.PENDING


class ClusterGateway:
    """Create, observe and delete the resources of a test run.

    Example:
        ```python
        gateway = ClusterGateway()
        gateway.create_namespace("kubernetes-embedded-test-1a2b3c4d")
        gateway.apply_rbac("kubernetes-embedded-test-1a2b3c4d")
        gateway.create_job(job)
        info = gateway.get_job_status("ket-my-app", "kubernetes-embedded-test-1a2b3c4d")
        ```
    """

    def __init__(self) -> None:
        """Initialize the gateway with lazy-loaded clients."""
        self._batch_api: BatchV1Api | None = None
        self._core_api: CoreV1Api | None = None
        self._rbac_api: RbacAuthorizationV1Api | None = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        """Initialize Kubernetes clients if not already done."""
        if self._initialized:
            return

        try:
            # Try in-cluster config first (when running in K8s)
            config.load_incluster_config()
            logger.debug("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            # Fall back to kubeconfig (for local development)
            try:
                config.load_kube_config()
                logger.debug("Loaded kubeconfig Kubernetes configuration")
            except config.ConfigException as e:
                logger.warning("Failed to load Kubernetes configuration: %s", e)
                raise ClusterError("No Kubernetes configuration available") from e

        self._batch_api = client.BatchV1Api()
        self._core_api = client.CoreV1Api()
        self._rbac_api = client.RbacAuthorizationV1Api()
        self._initialized = True

    @property
    def batch_api(self) -> BatchV1Api:
        """Get the BatchV1 API client."""
        self._ensure_initialized()
        assert self._batch_api is not None
        return self._batch_api

    @property
    def core_api(self) -> CoreV1Api:
        """Get the CoreV1 API client."""
        self._ensure_initialized()
        assert self._core_api is not None
        return self._core_api

    @property
    def rbac_api(self) -> RbacAuthorizationV1Api:
        """Get the RbacAuthorizationV1 API client."""
        self._ensure_initialized()
        assert self._rbac_api is not None
        return self._rbac_api

    # Namespaces

    def create_namespace(self, namespace: str | client.V1Namespace) -> str:
        """Create a namespace.

        Args:
            namespace: Namespace name or a full V1Namespace object

        Returns:
            Name of the created namespace

        Raises:
            ClusterError: If creation fails, including when it already exists
        """
        if isinstance(namespace, str):
            body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        else:
            body = namespace
        name = body.metadata.name

        try:
            self.core_api.create_namespace(body=body)
        except ApiException as e:
            raise ClusterError.from_api_exception(f"create namespace {name}", e) from e

        logger.info("Created test namespace %s", name)
        return name

    def delete_namespace(self, name: str, grace_period_seconds: int | None = None) -> None:
        """Delete a namespace, treating "not found" as already deleted.

        Raises:
            ClusterError: If deletion fails for any other reason
        """
        try:
            self.core_api.delete_namespace(
                name=name,
                body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds),
            )
        except ApiException as e:
            if e.status == 404:
                logger.info("Namespace %s not found, already deleted", name)
                return
            raise ClusterError.from_api_exception(f"delete namespace {name}", e) from e

        logger.info("Namespace %s deletion requested", name)

    def force_delete_namespace(self, name: str) -> None:
        """Delete a namespace with no grace period after clearing its finalizers.

        Namespaces with lingering finalizers can sit in ``Terminating``
        indefinitely; clearing them first lets the deletion go through.

        Raises:
            ClusterError: If the delete call fails for a reason other than 404
        """
        logger.info("Force deleting namespace %s", name)

        try:
            ns = self.core_api.read_namespace(name=name)
        except ApiException as e:
            if e.status == 404:
                logger.info("Namespace %s not found, already deleted", name)
                return
            logger.warning("Failed to read namespace %s: %s", name, e.reason)
            ns = None

        if ns is not None and ns.spec is not None and ns.spec.finalizers:
            logger.debug("Removing finalizers from namespace %s", name)
            ns.spec.finalizers = []
            try:
                self.core_api.replace_namespace_finalize(name=name, body=ns)
            except ApiException as e:
                logger.warning("Failed to remove finalizers from %s: %s", name, e.reason)

        try:
            self.core_api.delete_namespace(
                name=name,
                body=client.V1DeleteOptions(
                    grace_period_seconds=0,
                    propagation_policy="Background",
                ),
            )
        except ApiException as e:
            if e.status == 404:
                logger.info("Namespace %s not found, already deleted", name)
                return
            raise ClusterError.from_api_exception(f"force delete namespace {name}", e) from e

        logger.info("Namespace %s deletion requested", name)

    # RBAC

    def apply_rbac(self, namespace: str) -> None:
        """Create the test runner's ServiceAccount, Role and RoleBinding.

        Objects that already exist are left alone, so calling this twice is safe.

        Raises:
            ClusterError: If any creation fails for a reason other than 409
        """
        steps = [
            (
                "service account",
                lambda: self.core_api.create_namespaced_service_account(
                    namespace=namespace, body=build_service_account(namespace)
                ),
            ),
            (
                "role",
                lambda: self.rbac_api.create_namespaced_role(
                    namespace=namespace, body=build_role(namespace)
                ),
            ),
            (
                "role binding",
                lambda: self.rbac_api.create_namespaced_role_binding(
                    namespace=namespace, body=build_role_binding(namespace)
                ),
            ),
        ]

        for kind, create in steps:
            try:
                create()
                logger.debug("Created %s in %s", kind, namespace)
            except ApiException as e:
                if e.status == 409:
                    logger.debug("The %s already exists in %s", kind, namespace)
                    continue
                raise ClusterError.from_api_exception(f"create {kind}", e) from e

        logger.info("Applied RBAC in namespace %s", namespace)

    # Workload

    def create_config_map(self, config_map: V1ConfigMap) -> None:
        """Create a ConfigMap, replacing an existing one of the same name.

        Raises:
            ClusterError: If creation fails
        """
        name = config_map.metadata.name
        namespace = config_map.metadata.namespace
        try:
            self.core_api.create_namespaced_config_map(namespace=namespace, body=config_map)
            logger.info("Created source ConfigMap %s", name)
        except ApiException as e:
            if e.status != 409:
                raise ClusterError.from_api_exception(f"create ConfigMap {name}", e) from e
            try:
                self.core_api.replace_namespaced_config_map(
                    name=name, namespace=namespace, body=config_map
                )
            except ApiException as replace_error:
                raise ClusterError.from_api_exception(
                    f"replace ConfigMap {name}", replace_error
                ) from replace_error
            logger.info("Replaced existing source ConfigMap %s", name)

    def create_job(self, job: V1Job) -> V1Job:
        """Create a Job.

        Returns:
            The Job as accepted by the API server

        Raises:
            ClusterError: If creation fails
        """
        name = job.metadata.name
        namespace = job.metadata.namespace
        try:
            created = self.batch_api.create_namespaced_job(namespace=namespace, body=job)
        except ApiException as e:
            raise ClusterError.from_api_exception(f"create job {name}", e) from e

        logger.info("Created job %s in namespace %s", name, namespace)
        return created

    # Observation

    def get_job_status(self, job_name: str, namespace: str) -> JobInfo:
        """Read a Job's status counters.

        Raises:
            ClusterError: If the Job cannot be read
        """
        try:
            job = self.batch_api.read_namespaced_job_status(name=job_name, namespace=namespace)
        except ApiException as e:
            raise ClusterError.from_api_exception(f"get job status for {job_name}", e) from e

        status = job.status
        return JobInfo(
            name=job_name,
            namespace=namespace,
            status=determine_job_status(job),
            active=(status.active or 0) if status else 0,
            succeeded=(status.succeeded or 0) if status else 0,
            failed=(status.failed or 0) if status else 0,
        )

    def list_pods(self, namespace: str, label_selector: str | None = None) -> list[V1Pod]:
        """List pods in a namespace, optionally filtered by label.

        Raises:
            ClusterError: If the list call fails
        """
        try:
            if label_selector:
                pods = self.core_api.list_namespaced_pod(
                    namespace=namespace, label_selector=label_selector
                )
            else:
                pods = self.core_api.list_namespaced_pod(namespace=namespace)
        except ApiException as e:
            raise ClusterError.from_api_exception(f"list pods in {namespace}", e) from e
        return list(pods.items or [])

    def list_pods_for_job(self, job_name: str, namespace: str) -> list[V1Pod]:
        """List the pods created for a Job."""
        return self.list_pods(namespace, label_selector=job_pod_selector(job_name))

    def get_pod_exit_code(self, job_name: str, namespace: str) -> int:
        """Read the test container's exit code from the Job's latest pod.

        Raises:
            ClusterError: If there is no pod, or its container has not terminated
        """
        pods = self.list_pods_for_job(job_name, namespace)
        if not pods:
            raise ClusterError(f"no pods found for job {job_name}")

        pod = latest_pod(pods)
        statuses = pod.status.container_statuses if pod.status else None
        if not statuses:
            raise ClusterError(f"no container statuses found for pod {pod.metadata.name}")

        status = next((s for s in statuses if s.name == CONTAINER_NAME), statuses[0])
        if status.state is None or status.state.terminated is None:
            raise ClusterError(f"container in pod {pod.metadata.name} has not terminated yet")
        return int(status.state.terminated.exit_code)

    def stream_pod_logs(
        self,
        pod_name: str,
        namespace: str,
        container: str | None = None,
        follow: bool = True,
    ) -> HTTPResponse:
        """Open a pod log stream.

        Returns:
            The raw response; read it in chunks and ``close()`` it when done

        Raises:
            ClusterError: If the stream cannot be opened
        """
        kwargs: dict[str, object] = {"follow": follow, "_preload_content": False}
        if container:
            kwargs["container"] = container
        try:
            return self.core_api.read_namespaced_pod_log(
                name=pod_name, namespace=namespace, **kwargs
            )
        except ApiException as e:
            raise ClusterError.from_api_exception(f"stream logs from {pod_name}", e) from e

    def read_pod_logs(
        self,
        pod_name: str,
        namespace: str,
        container: str | None = None,
        tail_lines: int | None = None,
    ) -> str:
        """Read a pod's current logs in one call.

        Raises:
            ClusterError: If the logs cannot be read
        """
        kwargs: dict[str, object] = {}
        if container:
            kwargs["container"] = container
        if tail_lines is not None:
            kwargs["tail_lines"] = tail_lines
        try:
            return self.core_api.read_namespaced_pod_log(
                name=pod_name, namespace=namespace, **kwargs
            ) or ""
        except ApiException as e:
            raise ClusterError.from_api_exception(f"read logs from {pod_name}", e) from e

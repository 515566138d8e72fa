"""Tests for ClusterGateway."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from kubernetes.client import (
    V1Job,
    V1JobCondition,
    V1JobStatus,
    V1Namespace,
    V1NamespaceSpec,
    V1ObjectMeta,
    V1PodList,
)
from kubernetes.client.exceptions import ApiException

from ket.core.errors import ClusterError
from ket.models.k8s import JobStatus
from ket.services.cluster import (
    ClusterGateway,
    describe_pod_status,
    determine_job_status,
    has_pod_terminated,
    is_pod_ready_for_logs,
    job_pod_selector,
)

NAMESPACE = "kubernetes-embedded-test-1a2b3c4d"


@pytest.fixture
def mock_batch_api():
    """Create a mock BatchV1Api."""
    return MagicMock()


@pytest.fixture
def mock_core_api():
    """Create a mock CoreV1Api."""
    return MagicMock()


@pytest.fixture
def mock_rbac_api():
    """Create a mock RbacAuthorizationV1Api."""
    return MagicMock()


@pytest.fixture
def gateway(mock_batch_api, mock_core_api, mock_rbac_api):
    """Create a ClusterGateway with mocked clients."""
    gateway = ClusterGateway()
    gateway._batch_api = mock_batch_api
    gateway._core_api = mock_core_api
    gateway._rbac_api = mock_rbac_api
    gateway._initialized = True
    return gateway


class TestNamespaces:
    """Tests for namespace creation and deletion."""

    def test_create_namespace_from_name(self, gateway, mock_core_api):
        """Test creating a namespace by name."""
        assert gateway.create_namespace(NAMESPACE) == NAMESPACE

        body = mock_core_api.create_namespace.call_args.kwargs["body"]
        assert body.metadata.name == NAMESPACE

    def test_create_namespace_conflict_is_reported(self, gateway, mock_core_api):
        """Test that an existing namespace surfaces as a conflict."""
        mock_core_api.create_namespace.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(ClusterError) as exc_info:
            gateway.create_namespace(NAMESPACE)

        assert exc_info.value.is_conflict
        assert "Conflict" in str(exc_info.value)

    def test_delete_namespace_not_found_is_ignored(self, gateway, mock_core_api):
        """Test that deleting a missing namespace is not an error."""
        mock_core_api.delete_namespace.side_effect = ApiException(status=404, reason="Not Found")

        gateway.delete_namespace(NAMESPACE)

        mock_core_api.delete_namespace.assert_called_once()

    def test_delete_namespace_other_errors_raise(self, gateway, mock_core_api):
        """Test that other delete failures raise ClusterError."""
        mock_core_api.delete_namespace.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ClusterError) as exc_info:
            gateway.delete_namespace(NAMESPACE)

        assert exc_info.value.status == 403

    def test_force_delete_clears_finalizers(self, gateway, mock_core_api):
        """Test that finalizers are removed before a zero-grace delete."""
        mock_core_api.read_namespace.return_value = V1Namespace(
            metadata=V1ObjectMeta(name=NAMESPACE),
            spec=V1NamespaceSpec(finalizers=["kubernetes"]),
        )

        gateway.force_delete_namespace(NAMESPACE)

        finalized = mock_core_api.replace_namespace_finalize.call_args.kwargs["body"]
        assert finalized.spec.finalizers == []
        options = mock_core_api.delete_namespace.call_args.kwargs["body"]
        assert options.grace_period_seconds == 0
        assert options.propagation_policy == "Background"

    def test_force_delete_without_finalizers(self, gateway, mock_core_api):
        """Test that the finalize call is skipped when there is nothing to clear."""
        mock_core_api.read_namespace.return_value = V1Namespace(
            metadata=V1ObjectMeta(name=NAMESPACE), spec=V1NamespaceSpec()
        )

        gateway.force_delete_namespace(NAMESPACE)

        mock_core_api.replace_namespace_finalize.assert_not_called()
        mock_core_api.delete_namespace.assert_called_once()

    def test_force_delete_missing_namespace(self, gateway, mock_core_api):
        """Test that a namespace already gone is left alone."""
        mock_core_api.read_namespace.side_effect = ApiException(status=404, reason="Not Found")

        gateway.force_delete_namespace(NAMESPACE)

        mock_core_api.delete_namespace.assert_not_called()

    def test_force_delete_tolerates_finalize_failure(self, gateway, mock_core_api):
        """Test that a failed finalizer update still attempts the delete."""
        mock_core_api.read_namespace.return_value = V1Namespace(
            metadata=V1ObjectMeta(name=NAMESPACE),
            spec=V1NamespaceSpec(finalizers=["kubernetes"]),
        )
        mock_core_api.replace_namespace_finalize.side_effect = ApiException(status=500)

        gateway.force_delete_namespace(NAMESPACE)

        mock_core_api.delete_namespace.assert_called_once()


class TestApplyRbac:
    """Tests for RBAC creation."""

    def test_creates_service_account_role_and_binding(self, gateway, mock_core_api, mock_rbac_api):
        """Test that all three objects are created in the namespace."""
        gateway.apply_rbac(NAMESPACE)

        mock_core_api.create_namespaced_service_account.assert_called_once()
        assert mock_rbac_api.create_namespaced_role.call_args.kwargs["namespace"] == NAMESPACE
        assert mock_rbac_api.create_namespaced_role_binding.call_args.kwargs["namespace"] == NAMESPACE

    def test_apply_rbac_is_idempotent(self, gateway, mock_core_api, mock_rbac_api):
        """Test that already-existing objects are not an error."""
        conflict = ApiException(status=409, reason="AlreadyExists")
        mock_core_api.create_namespaced_service_account.side_effect = conflict
        mock_rbac_api.create_namespaced_role.side_effect = conflict
        mock_rbac_api.create_namespaced_role_binding.side_effect = conflict

        gateway.apply_rbac(NAMESPACE)
        gateway.apply_rbac(NAMESPACE)

        assert mock_rbac_api.create_namespaced_role_binding.call_count == 2

    def test_apply_rbac_propagates_other_errors(self, gateway, mock_rbac_api):
        """Test that a forbidden role creation is raised."""
        mock_rbac_api.create_namespaced_role.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ClusterError, match="create role"):
            gateway.apply_rbac(NAMESPACE)

        mock_rbac_api.create_namespaced_role_binding.assert_not_called()


class TestJobs:
    """Tests for Job creation and status."""

    def test_create_job(self, gateway, mock_batch_api):
        """Test that the Job is created in its own namespace."""
        job = V1Job(metadata=V1ObjectMeta(name="ket-my-app", namespace=NAMESPACE))

        gateway.create_job(job)

        mock_batch_api.create_namespaced_job.assert_called_once_with(namespace=NAMESPACE, body=job)

    def test_create_job_failure(self, gateway, mock_batch_api):
        """Test that a failed Job creation raises ClusterError."""
        mock_batch_api.create_namespaced_job.side_effect = ApiException(status=422, reason="Invalid")
        job = V1Job(metadata=V1ObjectMeta(name="ket-my-app", namespace=NAMESPACE))

        with pytest.raises(ClusterError, match="Invalid"):
            gateway.create_job(job)

    def test_get_job_status_counts(self, gateway, mock_batch_api):
        """Test reading a Job's status counters."""
        mock_batch_api.read_namespaced_job_status.return_value = V1Job(
            status=V1JobStatus(active=None, succeeded=1, failed=None)
        )

        info = gateway.get_job_status("ket-my-app", NAMESPACE)

        assert info.status == JobStatus.SUCCEEDED
        assert info.succeeded == 1
        assert info.failed == 0
        assert info.active == 0

    def test_determine_job_status_prefers_conditions(self):
        """Test that a Failed condition wins over counters."""
        job = V1Job(
            status=V1JobStatus(
                active=1,
                conditions=[V1JobCondition(type="Failed", status="True")],
            )
        )
        assert determine_job_status(job) == JobStatus.FAILED

    def test_determine_job_status_running_and_pending(self):
        """Test the non-terminal statuses."""
        assert determine_job_status(V1Job(status=V1JobStatus(active=1))) == JobStatus.RUNNING
        assert determine_job_status(V1Job(status=V1JobStatus())) == JobStatus.PENDING
        assert determine_job_status(V1Job()) == JobStatus.PENDING


class TestPods:
    """Tests for pod lookups, exit codes and logs."""

    def test_list_pods_for_job_uses_job_name_selector(self, gateway, mock_core_api, make_pod):
        """Test the job-name label selector."""
        mock_core_api.list_namespaced_pod.return_value = V1PodList(items=[make_pod()])

        pods = gateway.list_pods_for_job("ket-my-app", NAMESPACE)

        assert len(pods) == 1
        mock_core_api.list_namespaced_pod.assert_called_once_with(
            namespace=NAMESPACE, label_selector=job_pod_selector("ket-my-app")
        )
        assert job_pod_selector("ket-my-app") == "job-name=ket-my-app"

    def test_get_pod_exit_code(self, gateway, mock_core_api, make_pod):
        """Test reading the terminated container's exit code."""
        mock_core_api.list_namespaced_pod.return_value = V1PodList(
            items=[make_pod(phase="Failed", state="terminated", exit_code=3)]
        )

        assert gateway.get_pod_exit_code("ket-my-app", NAMESPACE) == 3

    def test_get_pod_exit_code_uses_newest_pod(self, gateway, mock_core_api, make_pod):
        """Test that with retries the latest pod decides."""
        older = make_pod(
            name="old", state="terminated", exit_code=2, created=datetime(2024, 1, 1, tzinfo=UTC)
        )
        newer = make_pod(
            name="new", state="terminated", exit_code=0, created=datetime(2024, 1, 2, tzinfo=UTC)
        )
        mock_core_api.list_namespaced_pod.return_value = V1PodList(items=[older, newer])

        assert gateway.get_pod_exit_code("ket-my-app", NAMESPACE) == 0

    def test_get_pod_exit_code_without_pods(self, gateway, mock_core_api):
        """Test that a missing pod is an error."""
        mock_core_api.list_namespaced_pod.return_value = V1PodList(items=[])

        with pytest.raises(ClusterError, match="no pods"):
            gateway.get_pod_exit_code("ket-my-app", NAMESPACE)

    def test_get_pod_exit_code_not_terminated(self, gateway, mock_core_api, make_pod):
        """Test that a running container has no exit code yet."""
        mock_core_api.list_namespaced_pod.return_value = V1PodList(items=[make_pod()])

        with pytest.raises(ClusterError, match="not terminated"):
            gateway.get_pod_exit_code("ket-my-app", NAMESPACE)

    def test_stream_pod_logs_follows_without_preloading(self, gateway, mock_core_api):
        """Test that the log stream is opened as a raw following response."""
        gateway.stream_pod_logs("pod-1", NAMESPACE, container="test-runner")

        kwargs = mock_core_api.read_namespaced_pod_log.call_args.kwargs
        assert kwargs["follow"] is True
        assert kwargs["_preload_content"] is False
        assert kwargs["container"] == "test-runner"

    def test_read_pod_logs_tail(self, gateway, mock_core_api):
        """Test reading the tail of a pod's logs."""
        mock_core_api.read_namespaced_pod_log.return_value = "agent ready\n"

        logs = gateway.read_pod_logs("agent", "default", container="mirrord-agent", tail_lines=50)

        assert logs == "agent ready\n"
        assert mock_core_api.read_namespaced_pod_log.call_args.kwargs["tail_lines"] == 50


class TestPodStatusHelpers:
    """Tests for pod status helpers."""

    def test_ready_for_logs(self, make_pod):
        """Test the running and ready check."""
        assert is_pod_ready_for_logs(make_pod())
        assert not is_pod_ready_for_logs(make_pod(ready=False))
        assert not is_pod_ready_for_logs(make_pod(state="waiting"))
        assert not is_pod_ready_for_logs(make_pod(state=None))

    def test_terminated(self, make_pod):
        """Test the terminated check."""
        assert has_pod_terminated(make_pod(state="terminated"))
        assert not has_pod_terminated(make_pod())

    def test_describe_pod_status(self, make_pod):
        """Test the human-readable status."""
        assert describe_pod_status(make_pod(state=None)) == "ContainerCreating"
        assert describe_pod_status(make_pod(state="waiting")) == "ContainerCreating"
        assert describe_pod_status(make_pod(state="waiting", reason="ImagePullBackOff")) == (
            "Waiting: ImagePullBackOff"
        )
        assert describe_pod_status(make_pod()) == "Running"
        assert describe_pod_status(make_pod(state="terminated", reason="Error")) == "Terminated: Error"


class TestInitialization:
    """Tests for lazy client initialization."""

    def test_missing_configuration_raises_cluster_error(self, monkeypatch):
        """Test that no in-cluster config and no kubeconfig is a ClusterError."""
        from kubernetes import config

        def fail():
            raise config.ConfigException("no config")

        monkeypatch.setattr(config, "load_incluster_config", fail)
        monkeypatch.setattr(config, "load_kube_config", fail)

        with pytest.raises(ClusterError, match="No Kubernetes configuration"):
            ClusterGateway().core_api

"""Pytest configuration and shared fixtures for ket tests."""

from datetime import UTC, datetime

import pytest
from kubernetes.client import (
    V1ContainerState,
    V1ContainerStateRunning,
    V1ContainerStateTerminated,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodStatus,
)

from ket.core.config import Settings
from ket.models.k8s import JobInfo, JobStatus
from ket.models.run_config import RunConfig


def build_pod(
    name="ket-my-app-abcde",
    phase="Running",
    state="running",
    ready=True,
    exit_code=0,
    created=None,
    container="test-runner",
    reason=None,
):
    """Build a real V1Pod with a single container in the given state."""
    if state == "running":
        container_state = V1ContainerState(running=V1ContainerStateRunning())
    elif state == "terminated":
        container_state = V1ContainerState(
            terminated=V1ContainerStateTerminated(exit_code=exit_code, reason=reason or "Completed")
        )
    elif state == "waiting":
        container_state = V1ContainerState(
            waiting=V1ContainerStateWaiting(reason=reason or "ContainerCreating")
        )
    else:
        container_state = None

    statuses = None
    if container_state is not None:
        statuses = [
            V1ContainerStatus(
                name=container,
                image="busybox",
                image_id="",
                ready=ready,
                restart_count=0,
                state=container_state,
            )
        ]

    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            creation_timestamp=created or datetime(2024, 1, 1, tzinfo=UTC),
        ),
        status=V1PodStatus(phase=phase, container_statuses=statuses),
    )


class FakeLogResponse:
    """Stand-in for the raw urllib3 response of a followed log stream."""

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.closed = False

    def stream(self, amt=None):
        for chunk in self.chunks:
            if self.closed:
                return
            yield chunk

    def close(self):
        self.closed = True


class FakeGateway:
    """In-memory ClusterGateway recording every call.

    ``job_statuses`` is consumed one entry per status poll; the last entry
    repeats. ``errors`` maps a method name to the exception it raises.
    """

    def __init__(self, job_statuses=None, exit_code=0, pods=None, log_chunks=None):
        self.job_statuses = list(job_statuses or [JobStatus.SUCCEEDED])
        self.exit_code = exit_code
        self.pods = pods if pods is not None else [build_pod()]
        self.log_chunks = log_chunks if log_chunks is not None else [b"running tests\n", b"ok\n"]
        self.errors = {}
        self.calls = []
        self.created_namespaces = []
        self.deleted_namespaces = []
        self.config_maps = []
        self.jobs = []
        self.status_polls = 0
        self.log_responses = []

    def _record(self, method, *args):
        self.calls.append(method)
        error = self.errors.get(method)
        if error is not None:
            raise error

    def create_namespace(self, namespace):
        name = namespace if isinstance(namespace, str) else namespace.metadata.name
        self._record("create_namespace", name)
        self.created_namespaces.append(name)
        return name

    def delete_namespace(self, name, grace_period_seconds=None):
        self.deleted_namespaces.append(name)
        self._record("delete_namespace", name)

    def force_delete_namespace(self, name):
        self.deleted_namespaces.append(name)
        self._record("force_delete_namespace", name)

    def apply_rbac(self, namespace):
        self._record("apply_rbac", namespace)

    def create_config_map(self, config_map):
        self._record("create_config_map", config_map)
        self.config_maps.append(config_map)

    def create_job(self, job):
        self._record("create_job", job)
        self.jobs.append(job)
        return job

    def get_job_status(self, job_name, namespace):
        self._record("get_job_status", job_name)
        self.status_polls += 1
        status = self.job_statuses.pop(0) if len(self.job_statuses) > 1 else self.job_statuses[0]
        return JobInfo(
            name=job_name,
            namespace=namespace,
            status=status,
            active=1 if status == JobStatus.RUNNING else 0,
            succeeded=1 if status == JobStatus.SUCCEEDED else 0,
            failed=1 if status == JobStatus.FAILED else 0,
        )

    def list_pods(self, namespace, label_selector=None):
        self._record("list_pods", namespace)
        return list(self.pods)

    def list_pods_for_job(self, job_name, namespace):
        self._record("list_pods_for_job", job_name)
        return list(self.pods)

    def get_pod_exit_code(self, job_name, namespace):
        self._record("get_pod_exit_code", job_name)
        if isinstance(self.exit_code, Exception):
            raise self.exit_code
        return self.exit_code

    def stream_pod_logs(self, pod_name, namespace, container=None, follow=True):
        self._record("stream_pod_logs", pod_name)
        response = FakeLogResponse(self.log_chunks)
        self.log_responses.append(response)
        return response

    def read_pod_logs(self, pod_name, namespace, container=None, tail_lines=None):
        self._record("read_pod_logs", pod_name)
        return ""


@pytest.fixture
def settings():
    """Settings with poll intervals and budgets shrunk for fast tests."""
    return Settings(
        job_poll_interval_seconds=0.01,
        pod_poll_interval_seconds=0.01,
        pod_ready_timeout_seconds=0.5,
        log_drain_timeout_seconds=0.5,
        sidecar_poll_interval_seconds=0.01,
        sidecar_ready_timeout_seconds=0.2,
        sidecar_stop_grace_seconds=0.5,
    )


@pytest.fixture
def run_config():
    """A valid run configuration for a project called my-app."""
    return RunConfig(project_root="my-app", test_command="npm test")


@pytest.fixture
def fake_gateway():
    """A FakeGateway whose Job succeeds on the first poll."""
    return FakeGateway()


@pytest.fixture
def make_gateway():
    """Factory for FakeGateway instances."""
    return FakeGateway


@pytest.fixture
def make_pod():
    """Factory for V1Pod objects."""
    return build_pod

"""Exception hierarchy for the test launcher.

The split between tooling failures and test failures matters to callers:
``TestExecutionError`` means the test ran and exited non-zero, every other
``KetError`` means the harness itself could not do its job.
"""

from __future__ import annotations

from kubernetes.client.exceptions import ApiException


class KetError(Exception):
    """Base class for launcher errors."""

    pass


class ConfigurationError(KetError):
    """Raised when a run configuration is invalid before any cluster mutation."""

    pass


class ClusterError(KetError):
    """Raised when a Kubernetes API call fails.

    Wraps the underlying ``ApiException`` (available as ``__cause__``) and keeps
    its HTTP status so callers can tell conflicts and missing objects apart.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @classmethod
    def from_api_exception(cls, action: str, e: ApiException) -> ClusterError:
        """Build a ClusterError describing a failed API action."""
        return cls(f"Failed to {action}: {e.reason}", status=e.status)

    @property
    def is_conflict(self) -> bool:
        return self.status == 409

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class ProvisioningError(KetError):
    """Raised when the namespace, RBAC, sidecar or Job could not be set up."""

    pass


class LaunchCancelledError(KetError):
    """Raised when a run is cancelled or times out while waiting on the cluster."""

    pass


class SidecarError(KetError):
    """Raised when the traffic-interception process fails to start or become ready."""

    pass


class InvalidStateTransitionError(KetError):
    """Raised when an invalid state transition is attempted."""

    pass


class TestExecutionError(KetError):
    """The test ran to completion and failed.

    Attributes:
        exit_code: Exit code of the test container
        message: Human-readable failure description
    """

    __test__ = False  # not a pytest test class

    def __init__(self, exit_code: int, message: str) -> None:
        super().__init__(f"{message} (exit code: {exit_code})")
        self.exit_code = exit_code
        self.message = message

"""Kubernetes-related models for test job tracking."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Status of a Kubernetes Job."""

    PENDING = "pending"  # Job created, pod not yet scheduled
    RUNNING = "running"  # Pod is running
    SUCCEEDED = "succeeded"  # Job completed successfully
    FAILED = "failed"  # Job failed

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class JobInfo(BaseModel):
    """Snapshot of a test Job's status counters.

    Attributes:
        name: Name of the job
        namespace: Kubernetes namespace
        status: Status derived from the counters
        active: Number of active pods
        succeeded: Number of succeeded pods
        failed: Number of failed pods
    """

    name: str
    namespace: str
    status: JobStatus
    active: int = 0
    succeeded: int = 0
    failed: int = 0


class TestResult(BaseModel):
    """Outcome of a finished test Job.

    ``success`` comes from the Job status and is authoritative; ``exit_code``
    is read from the pod and falls back to 0/1 when it cannot be determined.

    Attributes:
        exit_code: Exit code of the test container
        success: Whether the Job succeeded
        error: Failure description when the Job failed
        exit_code_known: Whether the exit code was read from the pod
    """

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(populate_by_name=True)

    exit_code: int = Field(alias="exitCode")
    success: bool
    error: str | None = None
    exit_code_known: bool = Field(default=True, alias="exitCodeKnown")

"""Pydantic models for run configuration and Kubernetes job state."""

from ket.models.common import (
    LaunchState,
    SidecarState,
    SourceMode,
)
from ket.models.k8s import JobInfo, JobStatus, TestResult
from ket.models.run_config import LoggingOptions, RunConfig, load_run_config

__all__ = [
    "JobInfo",
    "JobStatus",
    "LaunchState",
    "LoggingOptions",
    "RunConfig",
    "SidecarState",
    "SourceMode",
    "TestResult",
    "load_run_config",
]

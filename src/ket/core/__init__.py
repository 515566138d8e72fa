"""Core modules for configuration, logging, and errors."""

from ket.core.config import Settings, get_settings
from ket.core.errors import (
    ClusterError,
    ConfigurationError,
    InvalidStateTransitionError,
    KetError,
    LaunchCancelledError,
    ProvisioningError,
    SidecarError,
    TestExecutionError,
)
from ket.core.logging_config import configure_logging

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "ClusterError",
    "ConfigurationError",
    "InvalidStateTransitionError",
    "KetError",
    "LaunchCancelledError",
    "ProvisioningError",
    "SidecarError",
    "TestExecutionError",
]

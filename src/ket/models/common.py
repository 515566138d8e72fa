"""Common enums and state machines used across models."""

from enum import Enum


class SourceMode(str, Enum):
    """How the project source reaches the test runner pod."""

    HOSTPATH = "hostpath"  # Node already has the project mounted (Kind/K3D)
    CONFIGMAP = "configmap"  # Source shipped in a ConfigMap and unpacked by an init step


class LaunchState(str, Enum):
    """Phase of a single launch."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    OBSERVING = "observing"  # Log streaming and completion polling in parallel
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"  # Provisioning error, observation error or cancellation
    CLEANUP = "cleanup"
    DONE = "done"


class SidecarState(str, Enum):
    """Lifecycle of the traffic-interception process."""

    IDLE = "idle"
    STARTING = "starting"
    WAITING_FOR_AGENT = "waiting_for_agent"
    STREAMING = "streaming"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Single forward pass, nothing is re-entrant
VALID_LAUNCH_TRANSITIONS: dict[LaunchState, set[LaunchState]] = {
    LaunchState.PENDING: {LaunchState.PROVISIONING, LaunchState.ABORTED},
    LaunchState.PROVISIONING: {LaunchState.OBSERVING, LaunchState.ABORTED},
    LaunchState.OBSERVING: {
        LaunchState.SUCCEEDED,
        LaunchState.FAILED,
        LaunchState.ABORTED,
    },
    LaunchState.SUCCEEDED: {LaunchState.CLEANUP, LaunchState.DONE},
    LaunchState.FAILED: {LaunchState.CLEANUP, LaunchState.DONE},
    LaunchState.ABORTED: {LaunchState.CLEANUP, LaunchState.DONE},
    LaunchState.CLEANUP: {LaunchState.DONE},
    LaunchState.DONE: set(),  # Terminal state
}

VALID_SIDECAR_TRANSITIONS: dict[SidecarState, set[SidecarState]] = {
    SidecarState.IDLE: {SidecarState.STARTING, SidecarState.STOPPED},
    SidecarState.STARTING: {SidecarState.WAITING_FOR_AGENT, SidecarState.STOPPING},
    SidecarState.WAITING_FOR_AGENT: {SidecarState.STREAMING, SidecarState.STOPPING},
    SidecarState.STREAMING: {SidecarState.STOPPING},
    SidecarState.STOPPING: {SidecarState.STOPPED},
    SidecarState.STOPPED: set(),  # Terminal state
}


def can_transition_launch(from_state: LaunchState, to_state: LaunchState) -> bool:
    """Check if a launch may move from one state to another."""
    return to_state in VALID_LAUNCH_TRANSITIONS.get(from_state, set())


def can_transition_sidecar(from_state: SidecarState, to_state: SidecarState) -> bool:
    """Check if a sidecar session may move from one state to another."""
    return to_state in VALID_SIDECAR_TRANSITIONS.get(from_state, set())

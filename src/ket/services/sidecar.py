"""Traffic-interception sidecar process management.

Runs a local interception tool (mirrord by default) that wraps the process
under test and redirects a target pod's traffic to it. The session is
ready once the tool's agent pod in the target namespace is running and
reports readiness in its own logs.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from typing import IO, TYPE_CHECKING

from ket.core.config import Settings, get_settings
from ket.core.errors import ClusterError, InvalidStateTransitionError, SidecarError
from ket.models.common import SidecarState, can_transition_sidecar
from ket.models.run_config import CURRENT_DIR, RunConfig

if TYPE_CHECKING:
    from kubernetes.client import V1Pod

    from ket.services.cluster import ClusterGateway

logger = logging.getLogger(__name__)

DRAIN_CHUNK_SIZE = 1024
DRAIN_JOIN_TIMEOUT_SECONDS = 2.0


def build_sidecar_args(config: RunConfig, executable: str = "mirrord") -> list[str]:
    """Build the interception tool's command line.

    Raises:
        SidecarError: If no process to test is configured
    """
    if not config.process_to_test:
        raise SidecarError("no process to test configured")

    args = [executable, "exec"]
    if config.steal:
        args.append("--steal")
    args.extend(["--target", config.target_pod or ""])
    args.extend(["--target-namespace", config.effective_target_namespace])
    args.append("--")
    args.extend(shlex.split(config.process_to_test))
    return args


def _all_containers_ready(pod: V1Pod) -> bool:
    statuses = pod.status.container_statuses if pod.status else None
    if not statuses:
        return False
    return all(status.ready for status in statuses)


class SidecarSession:
    """Lifecycle of one interception process.

    ``idle -> starting -> waiting_for_agent -> streaming -> stopping -> stopped``.
    ``stop()`` is valid from every state and always leaves the session stopped.

    Example:
        ```python
        session = SidecarSession(config, gateway)
        try:
            session.start()
            session.wait_until_ready()
            session.start_streaming()
            ...
        finally:
            session.stop()
        ```
    """

    def __init__(
        self,
        config: RunConfig,
        gateway: ClusterGateway,
        settings: Settings | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._popen = popen
        self._process: subprocess.Popen | None = None
        self._stop_event = threading.Event()
        self._drain_threads: list[threading.Thread] = []
        self._log_files: tuple[str, str] | None = None
        self._state = SidecarState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SidecarState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def log_files(self) -> tuple[str, str] | None:
        """Paths of the stdout and stderr log files, once capture has started."""
        return self._log_files

    def _transition(self, new_state: SidecarState) -> None:
        if not can_transition_sidecar(self._state, new_state):
            raise InvalidStateTransitionError(
                f"Cannot move sidecar from {self._state.value} to {new_state.value}"
            )
        logger.debug("Sidecar %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def start(self) -> None:
        """Start the interception process and begin capturing its output.

        Raises:
            SidecarError: If the process cannot be started
        """
        self._transition(SidecarState.STARTING)

        args = build_sidecar_args(self.config, self.settings.sidecar_executable)
        cwd = self.config.project_root if self.config.project_root != CURRENT_DIR else None
        logger.info("Starting interception sidecar: %s", shlex.join(args))

        try:
            self._process = self._popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise SidecarError(f"failed to start {args[0]}: {e}") from e

        logger.info("Sidecar process started, PID: %s", self._process.pid)
        self._capture_output()

    def _capture_output(self) -> None:
        """Drain the process pipes into temp files so it never blocks on a full pipe."""
        assert self._process is not None
        stdout_file = tempfile.NamedTemporaryFile(
            mode="wb", prefix="mirrord-stdout-", suffix=".log", delete=False
        )
        stderr_file = tempfile.NamedTemporaryFile(
            mode="wb", prefix="mirrord-stderr-", suffix=".log", delete=False
        )
        self._log_files = (stdout_file.name, stderr_file.name)

        for name, pipe, sink in (
            ("stdout", self._process.stdout, stdout_file),
            ("stderr", self._process.stderr, stderr_file),
        ):
            thread = threading.Thread(
                target=self._drain,
                args=(name, pipe, sink),
                name=f"sidecar-{name}",
                daemon=True,
            )
            thread.start()
            self._drain_threads.append(thread)

        logger.info(
            "Sidecar logs will be written to: %s (stdout), %s (stderr)",
            stdout_file.name,
            stderr_file.name,
        )

    @staticmethod
    def _drain(name: str, pipe: IO[bytes] | None, sink: IO[bytes]) -> None:
        with sink:
            if pipe is None:
                return
            try:
                while True:
                    chunk = pipe.read1(DRAIN_CHUNK_SIZE)
                    if not chunk:
                        break
                    sink.write(chunk)
                    sink.flush()
            except (OSError, ValueError) as e:
                logger.warning("Error reading sidecar %s: %s", name, e)
                return
        logger.debug("Sidecar %s stream ended", name)

    def _check_alive(self) -> None:
        if self._process is None:
            raise SidecarError("sidecar process was never started")
        returncode = self._process.poll()
        if returncode is not None:
            raise SidecarError(
                f"sidecar process exited during initialization with code {returncode}"
            )

    def _find_agent_pods(self) -> list[V1Pod]:
        namespace = self.config.effective_target_namespace
        try:
            pods = self.gateway.list_pods(namespace, label_selector=self.settings.agent_label_selector)
        except ClusterError as e:
            logger.debug("Agent label lookup failed, falling back to name match: %s", e)
            pods = []
        if pods:
            return pods

        marker = self.settings.agent_name_marker.lower()
        return [
            pod
            for pod in self.gateway.list_pods(namespace)
            if pod.metadata and marker in (pod.metadata.name or "").lower()
        ]

    def check_agent_ready(self) -> bool:
        """Whether an agent pod is running, fully ready and logged its ready marker.

        Raises:
            SidecarError: If an agent pod has failed
            ClusterError: If the target namespace's pods cannot be listed
        """
        pods = self._find_agent_pods()
        if not pods:
            logger.info("No interception agent pods found yet")
            return False

        namespace = self.config.effective_target_namespace
        for pod in pods:
            name = pod.metadata.name
            phase = pod.status.phase if pod.status else None
            if phase == "Failed":
                raise SidecarError(f"interception agent pod {name} failed")
            if phase != "Running":
                logger.info("Interception agent pod %s is %s", name, phase or "Unknown")
                continue
            if not _all_containers_ready(pod):
                logger.info("Interception agent pod %s has containers not ready", name)
                continue

            try:
                logs = self.gateway.read_pod_logs(
                    name,
                    namespace,
                    container=self.settings.agent_container,
                    tail_lines=self.settings.agent_log_tail_lines,
                )
            except ClusterError as e:
                logger.warning("Failed to check interception agent logs: %s", e)
                continue

            if self.settings.agent_ready_marker in logs:
                logger.info("Interception agent %s is ready", name)
                return True

        return False

    def wait_until_ready(self) -> None:
        """Poll until the agent is ready, the process dies, or the budget runs out.

        Raises:
            SidecarError: If the process exits, the agent fails, the session
                is stopped, or readiness is not reached in time
        """
        self._transition(SidecarState.WAITING_FOR_AGENT)
        interval = self.settings.sidecar_poll_interval_seconds
        deadline = time.monotonic() + self.settings.sidecar_ready_timeout_seconds

        while True:
            if self._stop_event.is_set():
                raise SidecarError("sidecar stopped while waiting for the agent")
            self._check_alive()

            try:
                if self.check_agent_ready():
                    return
            except ClusterError as e:
                logger.warning("Failed to check interception agent health: %s", e)

            if time.monotonic() >= deadline:
                raise SidecarError(
                    f"sidecar failed to become ready within "
                    f"{self.settings.sidecar_ready_timeout_seconds:g}s"
                )
            logger.debug("Sidecar not ready yet, waiting %.1fs", interval)
            self._stop_event.wait(interval)

    def start_streaming(self) -> tuple[str, str] | None:
        """Mark the session as serving traffic; output keeps flowing to the log files."""
        self._transition(SidecarState.STREAMING)
        return self._log_files

    def stop(self) -> None:
        """Stop the process: terminate, wait for the grace period, then kill.

        Safe to call from any state and more than once.
        """
        with self._lock:
            if self._state == SidecarState.STOPPED:
                return
            self._stop_event.set()
            if self._state != SidecarState.IDLE:
                self._transition(SidecarState.STOPPING)

            process = self._process
            if process is not None and process.poll() is None:
                logger.info("Stopping sidecar process (PID: %s)", process.pid)
                process.terminate()
                try:
                    returncode = process.wait(timeout=self.settings.sidecar_stop_grace_seconds)
                    logger.info("Sidecar process stopped with code %s", returncode)
                except subprocess.TimeoutExpired:
                    logger.warning("Sidecar process did not stop gracefully, forcing kill")
                    process.kill()
                    process.wait()

            for thread in self._drain_threads:
                thread.join(timeout=DRAIN_JOIN_TIMEOUT_SECONDS)

            self._transition(SidecarState.STOPPED)

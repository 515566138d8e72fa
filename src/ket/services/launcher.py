"""Single-shot orchestration of a test run in an ephemeral namespace.

A launch provisions a namespace, its RBAC and the test Job, then streams
the test pod's output while polling the Job until it is terminal. The
namespace is deleted afterwards no matter how the run ended.

Blocking cluster calls run in worker threads so the event loop stays free
to deliver cancellation between poll ticks.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TextIO

from ket.core.config import Settings, get_settings
from ket.core.errors import (
    ClusterError,
    InvalidStateTransitionError,
    KetError,
    LaunchCancelledError,
    ProvisioningError,
    SidecarError,
    TestExecutionError,
)
from ket.models.common import LaunchState, SourceMode, can_transition_launch
from ket.models.k8s import JobInfo, JobStatus, TestResult
from ket.models.run_config import RunConfig
from ket.services.cluster import (
    ClusterGateway,
    describe_pod_status,
    has_pod_terminated,
    is_pod_ready_for_logs,
    latest_pod,
)
from ket.services.manifests import (
    CONTAINER_NAME,
    build_manifests,
    collect_project_files,
    job_name_for,
    render_manifests,
)
from ket.services.namespace_namer import generate_test_namespace
from ket.services.sidecar import SidecarSession

if TYPE_CHECKING:
    from kubernetes.client import V1Namespace
    from urllib3 import HTTPResponse

logger = logging.getLogger(__name__)

SidecarFactory = Callable[[RunConfig, ClusterGateway, Settings], SidecarSession]

# Log a "waiting for pod" line on every Nth empty pod listing
POD_WAIT_LOG_EVERY = 5


class Launcher:
    """Run one test Job to completion and clean up after it.

    ``run()`` returns the TestResult when the test passed and raises
    ``TestExecutionError`` when it ran and failed. Any other ``KetError``
    means the tooling failed, and ``LaunchCancelledError`` means the run
    was interrupted.

    Example:
        ```python
        launcher = Launcher(config)
        try:
            result = await launcher.run()
        except TestExecutionError as e:
            sys.exit(e.exit_code)
        ```
    """

    def __init__(
        self,
        config: RunConfig,
        gateway: ClusterGateway | None = None,
        settings: Settings | None = None,
        sidecar_factory: SidecarFactory | None = None,
        output: TextIO | None = None,
    ) -> None:
        self.config = config
        self.settings = settings or get_settings()
        self.gateway = gateway or ClusterGateway()
        self.output = output if output is not None else sys.stdout
        self.job_name = job_name_for(config)
        self.namespace: str | None = None
        self.result: TestResult | None = None
        self._sidecar_factory = sidecar_factory or SidecarSession
        self._sidecar: SidecarSession | None = None
        self._state = LaunchState.PENDING
        self._cleaned_up = False
        self._stop_streaming = threading.Event()
        self._log_response: HTTPResponse | None = None

    @property
    def state(self) -> LaunchState:
        return self._state

    def _transition(self, new_state: LaunchState) -> None:
        if not can_transition_launch(self._state, new_state):
            raise InvalidStateTransitionError(
                f"Cannot move launch from {self._state.value} to {new_state.value}"
            )
        logger.debug("Launch %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _abort(self) -> None:
        if can_transition_launch(self._state, LaunchState.ABORTED):
            self._transition(LaunchState.ABORTED)

    async def run(self) -> TestResult:
        """Provision, observe, classify and clean up.

        Returns:
            The result of a passing test

        Raises:
            ConfigurationError: If the run configuration is unusable
            ProvisioningError: If a cluster resource could not be created
            LaunchCancelledError: If the run was cancelled
            TestExecutionError: If the test ran and failed
        """
        self.config.validate_for_launch()

        try:
            await self._provision()
            self._transition(LaunchState.OBSERVING)
            result = await self._observe()
            self.result = result
            self._transition(LaunchState.SUCCEEDED if result.success else LaunchState.FAILED)
        except asyncio.CancelledError as e:
            logger.warning("Launch cancelled")
            self._abort()
            raise LaunchCancelledError("launch was cancelled") from e
        except Exception:
            self._abort()
            raise
        finally:
            self._cleanup()

        if not result.success:
            raise TestExecutionError(result.exit_code, result.error or "test failed")
        logger.info("Test completed successfully")
        return result

    # Provisioning

    async def _provision(self) -> None:
        self._transition(LaunchState.PROVISIONING)

        source = None
        if self.config.source_mode == SourceMode.CONFIGMAP:
            source = await asyncio.to_thread(collect_project_files, self.config.project_root)

        namespace = generate_test_namespace(self.config.namespace_prefix)
        manifests = build_manifests(self.config, namespace, source)

        await self._create_namespace(manifests.namespace)
        await self._provision_step(self.gateway.apply_rbac, namespace)
        if manifests.config_map is not None:
            await self._provision_step(self.gateway.create_config_map, manifests.config_map)
        if self.config.interception_enabled:
            await self._start_sidecar()
        await self._provision_step(self.gateway.create_job, manifests.job)

    async def _provision_step(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except ClusterError as e:
            raise ProvisioningError(str(e)) from e

    async def _create_namespace(self, body: V1Namespace) -> None:
        name = body.metadata.name
        try:
            await asyncio.to_thread(self.gateway.create_namespace, body)
        except asyncio.CancelledError:
            # The request may still land; deletion tolerates a namespace that never appeared
            self.namespace = name
            raise
        except ClusterError as e:
            if not e.is_conflict:
                raise ProvisioningError(str(e)) from e
            logger.warning("Namespace %s already exists, reusing it", name)
        self.namespace = name
        logger.info("Using test namespace %s", name)

    async def _start_sidecar(self) -> None:
        sidecar = self._sidecar_factory(self.config, self.gateway, self.settings)
        self._sidecar = sidecar
        try:
            await asyncio.to_thread(sidecar.start)
            await asyncio.to_thread(sidecar.wait_until_ready)
            sidecar.start_streaming()
        except SidecarError as e:
            if not self.config.allow_degraded_interception:
                raise ProvisioningError(f"traffic interception failed: {e}") from e
            logger.warning("Traffic interception unavailable, continuing without it: %s", e)
            await asyncio.to_thread(sidecar.stop)
            return
        logger.info(
            "Traffic interception active for pod %s in namespace %s",
            self.config.target_pod,
            self.config.effective_target_namespace,
        )

    # Observation

    async def _observe(self) -> TestResult:
        log_task = asyncio.create_task(self._stream_logs(), name="ket-log-stream")
        try:
            result = await self._wait_for_completion()
            done, _ = await asyncio.wait({log_task}, timeout=self.settings.log_drain_timeout_seconds)
            if not done:
                logger.warning("Log stream still open after the job finished, closing it")
            return result
        finally:
            if not log_task.done():
                self._stop_log_stream()
                log_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await log_task

    async def _wait_for_completion(self) -> TestResult:
        """Poll the Job until it is terminal, then classify the result."""
        interval = self.settings.job_poll_interval_seconds
        logger.info("Waiting for job %s to complete...", self.job_name)
        last_status: JobStatus | None = None

        while True:
            try:
                info = await asyncio.to_thread(
                    self.gateway.get_job_status, self.job_name, self.namespace
                )
            except ClusterError as e:
                logger.warning("Failed to get job status: %s", e)
            else:
                if info.status != last_status:
                    logger.debug(
                        "Job %s is %s (active=%d, succeeded=%d, failed=%d)",
                        self.job_name,
                        info.status.value,
                        info.active,
                        info.succeeded,
                        info.failed,
                    )
                    last_status = info.status
                if info.status.is_terminal:
                    return await self._classify(info)
            await asyncio.sleep(interval)

    async def _classify(self, info: JobInfo) -> TestResult:
        succeeded = info.status == JobStatus.SUCCEEDED
        default_code = 0 if succeeded else 1
        try:
            exit_code = await asyncio.to_thread(
                self.gateway.get_pod_exit_code, self.job_name, self.namespace
            )
            known = True
        except ClusterError as e:
            logger.warning(
                "Could not read exit code for job %s, assuming %d: %s",
                self.job_name,
                default_code,
                e,
            )
            exit_code, known = default_code, False

        if succeeded:
            logger.info("Job %s succeeded", self.job_name)
            return TestResult(exit_code=exit_code, success=True, exit_code_known=known)

        logger.info("Job %s failed", self.job_name)
        if exit_code == 0:
            # Jobs can fail without a failing container, e.g. on their active deadline
            exit_code = 1
        return TestResult(
            exit_code=exit_code,
            success=False,
            error=f"Test Runner Job {self.job_name} failed",
            exit_code_known=known,
        )

    async def _stream_logs(self) -> None:
        """Relay the test pod's output. Failures here only produce warnings."""
        try:
            pod_name = await self._wait_for_log_pod()
            if pod_name is None:
                return
            logger.info("Streaming logs from pod %s", pod_name)
            response = await asyncio.to_thread(self._open_log_stream, pod_name)
            try:
                await asyncio.to_thread(self._copy_log_stream, response)
            finally:
                self._stop_log_stream()
            logger.debug("Log stream from pod %s ended", pod_name)
        except Exception as e:
            logger.warning("Log streaming failed: %s", e)

    async def _wait_for_log_pod(self) -> str | None:
        """Wait for the Job's pod to be ready, or already finished, for log reads."""
        interval = self.settings.pod_poll_interval_seconds
        timeout = self.settings.pod_ready_timeout_seconds
        deadline = time.monotonic() + timeout
        last_status = None
        attempt = 0

        while time.monotonic() < deadline:
            attempt += 1
            try:
                pods = await asyncio.to_thread(
                    self.gateway.list_pods_for_job, self.job_name, self.namespace
                )
            except ClusterError as e:
                logger.warning("Failed to list pods for job %s: %s", self.job_name, e)
                pods = []

            if pods:
                pod = latest_pod(pods)
                status = describe_pod_status(pod)
                if status != last_status:
                    logger.info("Pod %s status: %s", pod.metadata.name, status)
                    last_status = status
                if is_pod_ready_for_logs(pod) or has_pod_terminated(pod):
                    return pod.metadata.name
            elif attempt % POD_WAIT_LOG_EVERY == 1:
                logger.info("Waiting for pod to be created...")

            await asyncio.sleep(interval)

        logger.warning(
            "Timed out after %.0fs waiting for a pod of job %s, test output will not be shown",
            timeout,
            self.job_name,
        )
        return None

    def _open_log_stream(self, pod_name: str) -> HTTPResponse:
        """Open the followed stream and register it for closing, from the worker thread."""
        response = self.gateway.stream_pod_logs(pod_name, self.namespace, CONTAINER_NAME)
        self._log_response = response
        # The stream may have been stopped while the request was in flight
        if self._stop_streaming.is_set():
            self._stop_log_stream()
        return response

    def _copy_log_stream(self, response: HTTPResponse) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            for chunk in response.stream(self.settings.log_chunk_size):
                if self._stop_streaming.is_set():
                    return
                self.output.write(decoder.decode(chunk))
                self.output.flush()
        except Exception:
            if self._stop_streaming.is_set():
                return
            raise
        tail = decoder.decode(b"", final=True)
        if tail:
            self.output.write(tail)
            self.output.flush()

    def _stop_log_stream(self) -> None:
        self._stop_streaming.set()
        response, self._log_response = self._log_response, None
        if response is not None:
            response.close()

    # Cleanup

    def _cleanup(self) -> None:
        """Stop the sidecar and delete the namespace, once.

        Runs outside the launch's cancellation scope. Errors are logged and
        never replace the run's own outcome.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self._sidecar is not None:
            try:
                self._sidecar.stop()
            except (KetError, OSError) as e:
                logger.warning("Failed to stop traffic interception sidecar: %s", e)
            if self._sidecar.log_files:
                stdout_log, stderr_log = self._sidecar.log_files
                logger.info("Sidecar logs: %s (stdout), %s (stderr)", stdout_log, stderr_log)

        if self.namespace is None:
            self._transition(LaunchState.DONE)
            return

        if self.config.keep_namespace:
            logger.info("Keeping namespace %s for inspection", self.namespace)
            self._transition(LaunchState.DONE)
            return

        self._transition(LaunchState.CLEANUP)
        logger.info("Cleaning up namespace %s", self.namespace)
        try:
            self.gateway.force_delete_namespace(self.namespace)
        except ClusterError as e:
            logger.error("Failed to delete namespace %s: %s", self.namespace, e)
        self._transition(LaunchState.DONE)


async def _run_until_signalled(launcher: Launcher) -> TestResult:
    """Run a launch, cancelling it on SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    assert task is not None
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug("Cannot install handler for %s: %s", sig.name, e)

    try:
        return await launcher.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_launch(
    config: RunConfig,
    gateway: ClusterGateway | None = None,
    settings: Settings | None = None,
    output: TextIO | None = None,
) -> TestResult:
    """Run one launch from synchronous code.

    Raises:
        TestExecutionError: If the test ran and failed
        KetError: For configuration, provisioning and cancellation failures
    """
    launcher = Launcher(config, gateway=gateway, settings=settings, output=output)
    return asyncio.run(_run_until_signalled(launcher))


def preview_manifests(config: RunConfig, namespace: str | None = None) -> str:
    """Render the objects a launch would create, without touching the cluster."""
    source = None
    if config.source_mode == SourceMode.CONFIGMAP:
        source = collect_project_files(config.project_root)
    namespace = namespace or generate_test_namespace(config.namespace_prefix)
    return render_manifests(build_manifests(config, namespace, source))

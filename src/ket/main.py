"""Command line entry point for ket (Kubernetes Embedded Testing)."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from ket.core.errors import (
    ConfigurationError,
    KetError,
    LaunchCancelledError,
    TestExecutionError,
)
from ket.core.logging_config import configure_logging
from ket.models.common import SourceMode
from ket.models.run_config import DEFAULT_WORKSPACE_PATH, RunConfig, load_run_config
from ket.services.launcher import preview_manifests, run_launch
from ket.services.manifests import (
    ENV_PROJECT_ROOT,
    ENV_TEST_NAMESPACE,
    ENV_WORKSPACE_PATH,
    REPORTS_MOUNT_PATH,
)

logger = logging.getLogger(__name__)

EXIT_CONFIGURATION_ERROR = 2
EXIT_TOOLING_ERROR = 3
EXIT_CANCELLED = 130

app = typer.Typer(
    help=(
        "Kubernetes Embedded Testing - run a test command in an isolated, "
        "ephemeral Kubernetes namespace and report its result."
    ),
    no_args_is_help=True,
)


@dataclass
class GlobalOptions:
    config: Optional[Path] = None
    project_root: Optional[str] = None
    workspace_path: Optional[str] = None
    namespace_prefix: Optional[str] = None
    debug: bool = False
    log_prefix: bool = False
    log_timestamp: bool = False


# Run options shared by `launch` and `manifest`
IMAGE_OPTION = typer.Option(None, "--image", "-i", help="Container image for the test runner.")
TEST_COMMAND_OPTION = typer.Option(
    None, "--test-command", "-t", help="Command to run inside the test container."
)
KEEP_NAMESPACE_OPTION = typer.Option(
    False, "--keep-namespace", "-k", help="Keep the test namespace after the run."
)
BACKOFF_LIMIT_OPTION = typer.Option(
    None, "--backoff-limit", "-b", min=0, help="Job retries before it is marked failed."
)
ACTIVE_DEADLINE_OPTION = typer.Option(
    None,
    "--active-deadline-seconds",
    "-d",
    min=1,
    help="Maximum run time of the Job, in seconds.",
)
TARGET_POD_OPTION = typer.Option(
    None, "--target-pod", help="Pod whose traffic is intercepted (requires --process-to-test)."
)
TARGET_NAMESPACE_OPTION = typer.Option(
    None, "--target-namespace", help="Namespace of the target pod (default: default)."
)
PROCESS_TO_TEST_OPTION = typer.Option(
    None, "--process-to-test", help="Local command that receives the intercepted traffic."
)
STEAL_OPTION = typer.Option(
    False, "--steal", help="Steal the target's traffic instead of mirroring it."
)
SOURCE_MODE_OPTION = typer.Option(
    None,
    "--source-mode",
    case_sensitive=False,
    help="How project source reaches the pod: hostpath or configmap.",
)
ALLOW_DEGRADED_OPTION = typer.Option(
    False,
    "--allow-degraded-interception",
    help="Continue without traffic interception if it cannot be established.",
)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a ket config file (YAML or JSON)."
    ),
    project_root: Optional[str] = typer.Option(
        None,
        "--project-root",
        "-r",
        help="Project directory, relative to the workspace (default: current directory).",
    ),
    workspace_path: Optional[str] = typer.Option(
        None,
        "--cluster-workspace-path",
        "-w",
        help=f"Workspace mount path inside the cluster (default: {DEFAULT_WORKSPACE_PATH}).",
    ),
    namespace_prefix: Optional[str] = typer.Option(
        None, "--ns-prefix", help="Prefix for the generated test namespace."
    ),
    debug: bool = typer.Option(False, "--debug", "-v", help="Enable debug logging."),
    log_prefix: bool = typer.Option(
        False, "--log-prefix", help="Prefix log lines with level and logger name."
    ),
    log_timestamp: bool = typer.Option(
        False, "--log-timestamp", help="Prefix log lines with a timestamp."
    ),
) -> None:
    ctx.obj = GlobalOptions(
        config=config,
        project_root=project_root,
        workspace_path=workspace_path,
        namespace_prefix=namespace_prefix,
        debug=debug,
        log_prefix=log_prefix,
        log_timestamp=log_timestamp,
    )


def _build_config(ctx: typer.Context, run_options: Dict[str, Any]) -> RunConfig:
    options: GlobalOptions = ctx.obj or GlobalOptions()
    overrides: Dict[str, Any] = {
        "project_root": options.project_root,
        "workspace_path": options.workspace_path,
        "namespace_prefix": options.namespace_prefix,
        "debug": options.debug or None,
        "logging": {
            "prefix": options.log_prefix or None,
            "timestamp": options.log_timestamp or None,
        },
    }
    overrides.update(run_options)
    return load_run_config(options.config, overrides=overrides)


def _run_options(
    image: Optional[str],
    test_command: Optional[str],
    keep_namespace: bool,
    backoff_limit: Optional[int],
    active_deadline_seconds: Optional[int],
    target_pod: Optional[str],
    target_namespace: Optional[str],
    process_to_test: Optional[str],
    steal: bool,
    source_mode: Optional[SourceMode],
    allow_degraded_interception: bool,
) -> Dict[str, Any]:
    # Flags can switch booleans on; leaving one off keeps the config file's value
    return {
        "image": image,
        "test_command": test_command,
        "keep_namespace": keep_namespace or None,
        "backoff_limit": backoff_limit,
        "active_deadline_seconds": active_deadline_seconds,
        "target_pod": target_pod,
        "target_namespace": target_namespace,
        "process_to_test": process_to_test,
        "steal": steal or None,
        "source_mode": source_mode,
        "allow_degraded_interception": allow_degraded_interception or None,
    }


@app.command()
def launch(
    ctx: typer.Context,
    image: Optional[str] = IMAGE_OPTION,
    test_command: Optional[str] = TEST_COMMAND_OPTION,
    keep_namespace: bool = KEEP_NAMESPACE_OPTION,
    backoff_limit: Optional[int] = BACKOFF_LIMIT_OPTION,
    active_deadline_seconds: Optional[int] = ACTIVE_DEADLINE_OPTION,
    target_pod: Optional[str] = TARGET_POD_OPTION,
    target_namespace: Optional[str] = TARGET_NAMESPACE_OPTION,
    process_to_test: Optional[str] = PROCESS_TO_TEST_OPTION,
    steal: bool = STEAL_OPTION,
    source_mode: Optional[SourceMode] = SOURCE_MODE_OPTION,
    allow_degraded_interception: bool = ALLOW_DEGRADED_OPTION,
) -> None:
    """Launch tests in an isolated Kubernetes namespace.

    Creates a temporary namespace with RBAC, runs the test command in a Job,
    streams its output to stdout and deletes the namespace afterwards.
    The exit code is the test's own exit code when the test fails.

    Examples:

        ket launch --test-command "npm test"

        ket -r src launch -t "go test -v ./..."
    """
    run_options = _run_options(
        image,
        test_command,
        keep_namespace,
        backoff_limit,
        active_deadline_seconds,
        target_pod,
        target_namespace,
        process_to_test,
        steal,
        source_mode,
        allow_degraded_interception,
    )
    try:
        config = _build_config(ctx, run_options)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)

    configure_logging(
        debug=config.debug,
        prefix=config.logging.prefix,
        timestamp=config.logging.timestamp,
    )

    try:
        run_launch(config)
    except TestExecutionError as e:
        logger.error("Test execution failed: %s", e)
        raise typer.Exit(code=e.exit_code or 1)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)
    except LaunchCancelledError as e:
        logger.error("%s", e)
        raise typer.Exit(code=EXIT_CANCELLED)
    except KetError as e:
        logger.error("Launch failed: %s", e)
        raise typer.Exit(code=EXIT_TOOLING_ERROR)


@app.command()
def manifest(
    ctx: typer.Context,
    image: Optional[str] = IMAGE_OPTION,
    test_command: Optional[str] = TEST_COMMAND_OPTION,
    keep_namespace: bool = KEEP_NAMESPACE_OPTION,
    backoff_limit: Optional[int] = BACKOFF_LIMIT_OPTION,
    active_deadline_seconds: Optional[int] = ACTIVE_DEADLINE_OPTION,
    target_pod: Optional[str] = TARGET_POD_OPTION,
    target_namespace: Optional[str] = TARGET_NAMESPACE_OPTION,
    process_to_test: Optional[str] = PROCESS_TO_TEST_OPTION,
    steal: bool = STEAL_OPTION,
    source_mode: Optional[SourceMode] = SOURCE_MODE_OPTION,
    allow_degraded_interception: bool = ALLOW_DEGRADED_OPTION,
) -> None:
    """Print the manifests a launch would apply, as multi-document YAML.

    Nothing is sent to the cluster.

    Examples:

        ket manifest -t "npm test" > test-manifests.yaml

        ket manifest -t "go test ./..." | kubectl apply -f -
    """
    configure_logging(silent=True)
    run_options = _run_options(
        image,
        test_command,
        keep_namespace,
        backoff_limit,
        active_deadline_seconds,
        target_pod,
        target_namespace,
        process_to_test,
        steal,
        source_mode,
        allow_degraded_interception,
    )
    try:
        config = _build_config(ctx, run_options)
        typer.echo(preview_manifests(config), nl=False)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)


ENV_DOCUMENTATION = f"""\
The following environment variables are set in the test runner pod:

ENVIRONMENT VARIABLES

  {ENV_TEST_NAMESPACE}
    Description: The Kubernetes namespace the test runs in
    Example:     kubernetes-embedded-test-a1b2c3d4
    Usage:       Target Kubernetes resources in your test namespace

  {ENV_PROJECT_ROOT}
    Description: The project root, relative to the workspace
    Example:     src/my-app or . (for the current directory)
    Usage:       Determine the working directory of your project

  {ENV_WORKSPACE_PATH}
    Description: The absolute workspace path inside the pod
    Example:     {DEFAULT_WORKSPACE_PATH}
    Usage:       Reference the mounted source code

  TARGET_NAMESPACE, TARGET_POD, PROCESS_TO_TEST
    Description: Traffic interception settings, set only when interception is enabled

VOLUME MOUNTS

  {DEFAULT_WORKSPACE_PATH}
    Description: Your source code
    Type:        HostPath volume (hostpath mode) or EmptyDir filled from a ConfigMap
    Usage:       Contains your project files

  {REPORTS_MOUNT_PATH}
    Description: Empty directory for test reports and artifacts
    Type:        EmptyDir volume
    Usage:       Write test results, coverage reports, etc. here

EXAMPLE USAGE IN TEST SCRIPTS

  # Inspect the test namespace
  kubectl get pods -n ${{{ENV_TEST_NAMESPACE}}}

  # Change to the project directory
  cd ${{{ENV_WORKSPACE_PATH}}}/${{{ENV_PROJECT_ROOT}}}

  # Write test reports
  cp coverage.xml {REPORTS_MOUNT_PATH}/
"""


@app.command()
def env() -> None:
    """Show the environment variables and mounts available in the test pod."""
    typer.echo(ENV_DOCUMENTATION, nl=False)


if __name__ == "__main__":
    app()

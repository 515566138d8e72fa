"""Run configuration model and config file loading."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ket.core.config import Settings, get_settings
from ket.core.errors import ConfigurationError
from ket.models.common import SourceMode

logger = logging.getLogger(__name__)

CURRENT_DIR = "."
DEFAULT_IMAGE = "atidyshirt/kubernetes-embedded-test-runner-base:latest"
DEFAULT_WORKSPACE_PATH = "/workspace"
DEFAULT_NAMESPACE_PREFIX = "kubernetes-embedded-test"
DEFAULT_BACKOFF_LIMIT = 1
DEFAULT_ACTIVE_DEADLINE_SECONDS = 1800
DEFAULT_TARGET_NAMESPACE = "default"


class LoggingOptions(BaseModel):
    """Display options for launcher logs."""

    model_config = ConfigDict(frozen=True)

    prefix: bool = False
    timestamp: bool = False


class RunConfig(BaseModel):
    """Immutable configuration for a single test run.

    Built once before the launcher starts and passed to every component.
    Field aliases match the keys used in ``ket-config.yaml``.

    Example:
        ```python
        config = RunConfig(
            projectRoot="backend/api",
            testCommand="pytest -q",
        )
        config.validate_for_launch()
        ```

    Attributes:
        project_root: Project directory, relative to the workspace mount
        image: Container image for the test runner pod
        test_command: Shell command executed with ``/bin/sh -c``
        workspace_path: Where the project is mounted inside the pod
        namespace_prefix: Prefix of the ephemeral namespace name
        backoff_limit: Job retry budget
        active_deadline_seconds: Server-side bound on the Job's run time
        keep_namespace: Skip namespace deletion after the run
        target_pod: Workload whose traffic is intercepted
        target_namespace: Namespace of the target workload
        process_to_test: Local process wrapped by the interception tool
        steal: Steal traffic instead of mirroring it
        source_mode: How the project source reaches the pod
        allow_degraded_interception: Run without interception if the sidecar fails
        debug: Enable debug logging
        logging: Log display options
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    project_root: str = Field(default=CURRENT_DIR, alias="projectRoot")
    image: str = DEFAULT_IMAGE
    test_command: str = Field(default="", alias="testCommand")
    workspace_path: str = Field(default=DEFAULT_WORKSPACE_PATH, alias="clusterWorkspacePath")
    namespace_prefix: str = Field(default=DEFAULT_NAMESPACE_PREFIX, alias="namespacePrefix")
    backoff_limit: int = Field(default=DEFAULT_BACKOFF_LIMIT, ge=0, alias="backoffLimit")
    active_deadline_seconds: int = Field(
        default=DEFAULT_ACTIVE_DEADLINE_SECONDS, gt=0, alias="activeDeadlineS"
    )
    keep_namespace: bool = Field(default=False, alias="keepNamespace")
    target_pod: str | None = Field(default=None, alias="targetPod")
    target_namespace: str | None = Field(default=None, alias="targetNamespace")
    process_to_test: str | None = Field(default=None, alias="processToTest")
    steal: bool = False
    source_mode: SourceMode = Field(default=SourceMode.HOSTPATH, alias="sourceMode")
    allow_degraded_interception: bool = Field(
        default=False, alias="allowDegradedInterception"
    )
    debug: bool = False
    logging: LoggingOptions = Field(default_factory=LoggingOptions)

    @property
    def interception_enabled(self) -> bool:
        """Whether a traffic-interception sidecar should be started."""
        return bool(self.process_to_test)

    @property
    def effective_target_namespace(self) -> str:
        return self.target_namespace or DEFAULT_TARGET_NAMESPACE

    @property
    def project_name(self) -> str:
        """Basename of the project root, or of the current directory for ``.``."""
        if self.project_root == CURRENT_DIR:
            return Path.cwd().name or "project"
        return os.path.basename(os.path.normpath(self.project_root)) or "project"

    def validate_for_launch(self) -> None:
        """Check the invariants a launch depends on.

        Raises:
            ConfigurationError: If the test command is missing or the
                interception fields are only partially set
        """
        if not self.test_command.strip():
            raise ConfigurationError(
                "test command is required: provide --test-command or set "
                "testCommand in the config file"
            )
        if bool(self.target_pod) != bool(self.process_to_test):
            raise ConfigurationError(
                "traffic interception needs both --target-pod and --process-to-test"
            )

    @classmethod
    def from_file(cls, path: str | Path) -> RunConfig:
        """Load a config from a YAML or JSON file."""
        return cls.model_validate(_read_config_file(Path(path)))


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"failed to read config file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return data


def find_config_file(settings: Settings | None = None) -> Path | None:
    """Find the default config file in the working directory or ``~/.ket``."""
    settings = settings or get_settings()
    candidates = [
        Path.cwd() / settings.config_file_name,
        Path(settings.config_home_dir).expanduser() / settings.config_file_name,
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_run_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> RunConfig:
    """Build a RunConfig from a config file and explicit overrides.

    Overrides use field names and win over file values; ``None`` values are
    treated as "not given". A missing explicit file is an error, a missing
    default file is not.

    Raises:
        ConfigurationError: If the file cannot be read or the values are invalid
    """
    if path is not None:
        config_path: Path | None = Path(path)
        if not config_path.is_file():
            raise ConfigurationError(f"config file not found: {config_path}")
    else:
        config_path = find_config_file(settings)

    data: dict[str, Any] = {}
    if config_path is not None:
        logger.debug("Loading config file %s", config_path)
        data = _read_config_file(config_path)

    try:
        merged = RunConfig.model_validate(data).model_dump()
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            if key == "logging" and isinstance(value, dict):
                given = {k: v for k, v in value.items() if v is not None}
                merged["logging"] = {**merged["logging"], **given}
            else:
                merged[key] = value
        return RunConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e

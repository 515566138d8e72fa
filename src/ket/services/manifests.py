"""Pure construction of the Kubernetes objects a test run needs.

Nothing here talks to the cluster. The same config and namespace always
produce the same objects, so ``ket manifest`` output matches what
``ket launch`` applies.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from kubernetes import client
from kubernetes.client import ApiClient

from ket.core.errors import ConfigurationError
from ket.models.common import SourceMode
from ket.models.run_config import CURRENT_DIR, RunConfig
from ket.services.namespace_namer import sanitize_name

logger = logging.getLogger(__name__)

# RBAC object names
SERVICE_ACCOUNT_NAME = "default"
ROLE_NAME = "ket-test-runner"
RBAC_API_GROUP = "rbac.authorization.k8s.io"

# Job layout
JOB_NAME_PREFIX = "ket"
CONTAINER_NAME = "test-runner"
INIT_CONTAINER_NAME = "extract-source"
SOURCE_VOLUME = "source-code"
WORKSPACE_VOLUME = "workspace"
REPORTS_VOLUME = "reports"
REPORTS_MOUNT_PATH = "/reports"
SOURCE_MOUNT_PATH = "/source"

# Labels
PART_OF_LABEL = "app.kubernetes.io/part-of"
PART_OF_VALUE = "ket"
NAMESPACE_LABEL = "ket.io/namespace"

# Env vars exposed to the test container
ENV_TEST_NAMESPACE = "KET_TEST_NAMESPACE"
ENV_PROJECT_ROOT = "KET_PROJECT_ROOT"
ENV_WORKSPACE_PATH = "KET_WORKSPACE_PATH"

# ConfigMap source mode
SKIPPED_SOURCE_PARTS = frozenset({"node_modules", ".git", "dist", "build"})
MAX_CONFIG_MAP_BYTES = 1024 * 1024  # API server limit for a ConfigMap
_CONFIG_MAP_KEY_INVALID = re.compile(r"[^-._a-zA-Z0-9]")

ALL_VERBS = ["get", "list", "watch", "create", "update", "patch", "delete"]


@dataclass
class TestManifests:
    """All objects applied for one test run, in apply order."""

    __test__ = False  # not a pytest test class

    namespace: client.V1Namespace
    service_account: client.V1ServiceAccount
    role: client.V1Role
    role_binding: client.V1RoleBinding
    job: client.V1Job
    config_map: client.V1ConfigMap | None = None

    def as_list(self) -> list[object]:
        objects: list[object] = [
            self.namespace,
            self.service_account,
            self.role,
            self.role_binding,
        ]
        if self.config_map is not None:
            objects.append(self.config_map)
        objects.append(self.job)
        return objects


@dataclass
class SourceFiles:
    """Project files packed for the ConfigMap source mode.

    Attributes:
        data: ConfigMap key -> file content
        paths: ConfigMap key -> path relative to the project root
    """

    data: dict[str, str] = field(default_factory=dict)
    paths: dict[str, str] = field(default_factory=dict)

    @property
    def total_bytes(self) -> int:
        return sum(len(content.encode("utf-8")) for content in self.data.values())


def calculate_working_directory(project_root: str, workspace_path: str) -> str:
    """Working directory of the test container.

    ``.`` maps to the workspace itself; anything else is joined onto it.

    Raises:
        ConfigurationError: If the project root is absolute or escapes the workspace
    """
    if project_root == CURRENT_DIR:
        return workspace_path
    if posixpath.isabs(project_root) or os.path.isabs(project_root):
        raise ConfigurationError(
            f"project root must be relative to the workspace, got {project_root!r}"
        )
    working_dir = posixpath.normpath(posixpath.join(workspace_path, project_root))
    workspace = posixpath.normpath(workspace_path)
    if working_dir != workspace and not working_dir.startswith(workspace.rstrip("/") + "/"):
        raise ConfigurationError(
            f"project root {project_root!r} resolves outside the workspace {workspace_path!r}"
        )
    return working_dir


def job_name_for(config: RunConfig) -> str:
    """Job name: ``ket-`` plus the project basename."""
    return f"{JOB_NAME_PREFIX}-{sanitize_name(config.project_name)}"


def config_map_name_for(config: RunConfig) -> str:
    return f"{JOB_NAME_PREFIX}-source-{sanitize_name(config.project_name)}"


def _labels(namespace: str) -> dict[str, str]:
    return {
        PART_OF_LABEL: PART_OF_VALUE,
        NAMESPACE_LABEL: namespace,
    }


def runner_policy_rules() -> list[client.V1PolicyRule]:
    """Permissions granted to the test pod inside its namespace."""
    return [
        client.V1PolicyRule(
            api_groups=[""],
            resources=[
                "pods",
                "services",
                "configmaps",
                "secrets",
                "persistentvolumeclaims",
                "endpoints",
            ],
            verbs=list(ALL_VERBS),
        ),
        client.V1PolicyRule(
            api_groups=[""],
            resources=["pods/log", "pods/portforward", "pods/exec"],
            verbs=["get", "list", "create"],
        ),
        client.V1PolicyRule(
            api_groups=["apps"],
            resources=["deployments", "statefulsets", "daemonsets"],
            verbs=list(ALL_VERBS),
        ),
        client.V1PolicyRule(
            api_groups=["batch"],
            resources=["jobs", "cronjobs"],
            verbs=list(ALL_VERBS),
        ),
        client.V1PolicyRule(
            api_groups=["networking.k8s.io"],
            resources=["ingresses", "networkpolicies"],
            verbs=list(ALL_VERBS),
        ),
    ]


def build_namespace(namespace: str) -> client.V1Namespace:
    return client.V1Namespace(
        api_version="v1",
        kind="Namespace",
        metadata=client.V1ObjectMeta(name=namespace, labels={PART_OF_LABEL: PART_OF_VALUE}),
    )


def build_service_account(namespace: str) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        api_version="v1",
        kind="ServiceAccount",
        metadata=client.V1ObjectMeta(name=SERVICE_ACCOUNT_NAME, namespace=namespace),
    )


def build_role(namespace: str) -> client.V1Role:
    return client.V1Role(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="Role",
        metadata=client.V1ObjectMeta(name=ROLE_NAME, namespace=namespace),
        rules=runner_policy_rules(),
    )


def build_role_binding(namespace: str) -> client.V1RoleBinding:
    return client.V1RoleBinding(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="RoleBinding",
        metadata=client.V1ObjectMeta(name=ROLE_NAME, namespace=namespace),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=SERVICE_ACCOUNT_NAME,
                namespace=namespace,
            )
        ],
        role_ref=client.V1RoleRef(
            api_group=RBAC_API_GROUP,
            kind="Role",
            name=ROLE_NAME,
        ),
    )


def encode_config_map_key(relative_path: str) -> str:
    """Turn a relative file path into a valid ConfigMap key."""
    key = relative_path.replace(os.sep, "/").replace("/", "__")
    return _CONFIG_MAP_KEY_INVALID.sub("-", key)


def _is_skipped(relative: Path) -> bool:
    return any(
        part.startswith(".") or part in SKIPPED_SOURCE_PARTS for part in relative.parts
    )


def collect_project_files(project_dir: str | Path) -> SourceFiles:
    """Walk a project tree and pack its text files for a ConfigMap.

    Hidden files and ``node_modules``/``.git``/``dist``/``build`` trees are
    skipped, as are files that cannot be read as UTF-8.

    Raises:
        ConfigurationError: If the project directory does not exist or the
            packed files exceed the ConfigMap size limit
    """
    root = Path(project_dir)
    if not root.is_dir():
        raise ConfigurationError(f"project root {root} is not a directory")

    source = SourceFiles()
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(root)
        if _is_skipped(relative):
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping file %s: %s", path, e)
            continue

        key = encode_config_map_key(relative.as_posix())
        if key in source.data:
            key = f"{key}-{len(source.data)}"
        source.data[key] = content
        source.paths[key] = relative.as_posix()

    if source.total_bytes > MAX_CONFIG_MAP_BYTES:
        raise ConfigurationError(
            f"project source is {source.total_bytes} bytes, over the "
            f"{MAX_CONFIG_MAP_BYTES} byte ConfigMap limit; use hostpath source mode"
        )

    logger.debug("Packed %d files from %s", len(source.data), root)
    return source


def build_config_map(
    config: RunConfig, namespace: str, source: SourceFiles
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=client.V1ObjectMeta(
            name=config_map_name_for(config),
            namespace=namespace,
            labels=_labels(namespace),
        ),
        data=dict(source.data),
    )


def _container_env(config: RunConfig, namespace: str) -> list[client.V1EnvVar]:
    env = [
        client.V1EnvVar(name=ENV_TEST_NAMESPACE, value=namespace),
        client.V1EnvVar(name=ENV_PROJECT_ROOT, value=config.project_root),
        client.V1EnvVar(name=ENV_WORKSPACE_PATH, value=config.workspace_path),
    ]
    if config.interception_enabled:
        env.extend(
            [
                client.V1EnvVar(name="TARGET_NAMESPACE", value=config.effective_target_namespace),
                client.V1EnvVar(name="TARGET_POD", value=config.target_pod or ""),
                client.V1EnvVar(name="PROCESS_TO_TEST", value=config.process_to_test or ""),
            ]
        )
    return env


def build_job(
    config: RunConfig,
    namespace: str,
    source: SourceFiles | None = None,
) -> client.V1Job:
    """Build the test Job.

    In hostpath mode the node's copy of the workspace is mounted read-write
    at the workspace path. In configmap mode the packed source is mounted at
    ``/source`` and an init container copies it into an empty-dir workspace.

    Raises:
        ConfigurationError: If no working directory can be derived, or
            configmap mode is used without packed source files
    """
    working_dir = calculate_working_directory(config.project_root, config.workspace_path)
    job_name = job_name_for(config)
    labels = _labels(namespace)

    volume_mounts = [
        client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=config.workspace_path),
        client.V1VolumeMount(name=REPORTS_VOLUME, mount_path=REPORTS_MOUNT_PATH),
    ]
    reports_volume = client.V1Volume(
        name=REPORTS_VOLUME, empty_dir=client.V1EmptyDirVolumeSource()
    )
    init_containers = None

    if config.source_mode == SourceMode.CONFIGMAP:
        if source is None:
            raise ConfigurationError("configmap source mode needs packed source files")
        volumes = [
            client.V1Volume(
                name=SOURCE_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(
                    name=config_map_name_for(config),
                    items=[
                        client.V1KeyToPath(key=key, path=source.paths[key])
                        for key in sorted(source.paths)
                    ],
                ),
            ),
            client.V1Volume(name=WORKSPACE_VOLUME, empty_dir=client.V1EmptyDirVolumeSource()),
            reports_volume,
        ]
        target = shlex.quote(working_dir)
        init_containers = [
            client.V1Container(
                name=INIT_CONTAINER_NAME,
                image=config.image,
                image_pull_policy="IfNotPresent",
                # The glob skips the kubelet's ..data and ..<timestamp> entries
                command=[
                    "/bin/sh",
                    "-c",
                    f"mkdir -p {target} && cp -rL {SOURCE_MOUNT_PATH}/* {target}/",
                ],
                volume_mounts=[
                    client.V1VolumeMount(
                        name=SOURCE_VOLUME, mount_path=SOURCE_MOUNT_PATH, read_only=True
                    ),
                    client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=config.workspace_path),
                ],
            )
        ]
    else:
        volumes = [
            client.V1Volume(
                name=WORKSPACE_VOLUME,
                host_path=client.V1HostPathVolumeSource(
                    path=config.workspace_path,
                    type="Directory",
                ),
            ),
            reports_volume,
        ]

    container = client.V1Container(
        name=CONTAINER_NAME,
        image=config.image,
        image_pull_policy="IfNotPresent",
        command=["/bin/sh", "-c", config.test_command],
        working_dir=working_dir,
        env=_container_env(config, namespace),
        volume_mounts=volume_mounts,
    )

    pod_spec = client.V1PodSpec(
        service_account_name=SERVICE_ACCOUNT_NAME,
        restart_policy="Never",
        init_containers=init_containers,
        containers=[container],
        volumes=volumes,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(name=job_name, namespace=namespace, labels=labels),
        spec=client.V1JobSpec(
            backoff_limit=config.backoff_limit,
            active_deadline_seconds=config.active_deadline_seconds,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=pod_spec,
            ),
        ),
    )


def build_manifests(
    config: RunConfig,
    namespace: str,
    source: SourceFiles | None = None,
) -> TestManifests:
    """Build every object needed for a run in the given namespace.

    Args:
        config: Run configuration
        namespace: Name of the ephemeral test namespace
        source: Packed project files, required in configmap source mode

    Returns:
        TestManifests with the namespace, RBAC triple, optional ConfigMap and Job

    Raises:
        ConfigurationError: If the Job's working directory cannot be derived
    """
    config_map = None
    if config.source_mode == SourceMode.CONFIGMAP and source is not None:
        config_map = build_config_map(config, namespace, source)

    return TestManifests(
        namespace=build_namespace(namespace),
        service_account=build_service_account(namespace),
        role=build_role(namespace),
        role_binding=build_role_binding(namespace),
        job=build_job(config, namespace, source),
        config_map=config_map,
    )


def render_manifests(manifests: TestManifests) -> str:
    """Render manifests as a multi-document YAML stream."""
    api_client = ApiClient()
    documents = [
        yaml.safe_dump(
            api_client.sanitize_for_serialization(obj),
            sort_keys=False,
            default_flow_style=False,
        )
        for obj in manifests.as_list()
    ]
    return "".join(f"---\n{doc}" for doc in documents)

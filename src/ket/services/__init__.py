"""Service layer: manifest building, cluster access, sidecar and launch orchestration."""

from ket.services.cluster import ClusterGateway
from ket.services.launcher import Launcher, preview_manifests, run_launch
from ket.services.manifests import (
    SourceFiles,
    TestManifests,
    build_manifests,
    collect_project_files,
    render_manifests,
)
from ket.services.namespace_namer import generate_test_namespace, sanitize_name
from ket.services.sidecar import SidecarSession, build_sidecar_args

__all__ = [
    "ClusterGateway",
    "Launcher",
    "SidecarSession",
    "SourceFiles",
    "TestManifests",
    "build_manifests",
    "build_sidecar_args",
    "collect_project_files",
    "generate_test_namespace",
    "preview_manifests",
    "render_manifests",
    "run_launch",
    "sanitize_name",
]

"""Manifest sources: raw YAML, chart archives and chart references."""

from .renderer import (
    ChartArchive,
    ChartReference,
    DeploymentMode,
    HelmRenderer,
    ManifestSource,
    RawManifest,
    build_manifest_source,
)

__all__ = [
    "ChartArchive",
    "ChartReference",
    "DeploymentMode",
    "HelmRenderer",
    "ManifestSource",
    "RawManifest",
    "build_manifest_source",
]

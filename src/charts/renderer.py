from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Union

from src.cluster.errors import RenderError, ValidationError

logger = logging.getLogger(__name__)

RELEASE_NAME = "test-name"
RELEASE_NAMESPACE = "default"
NOTES_FILE = "NOTES.txt"


class DeploymentMode(str, Enum):
    YAML = "YAML"
    CHART = "CHART"
    CHART_URL = "CHART_URL"

    @classmethod
    def parse(cls, value: str) -> "DeploymentMode":
        try:
            return cls((value or "").strip().upper())
        except ValueError as exc:
            choices = ", ".join(mode.value for mode in cls)
            raise ValidationError(f"deploymentMode must be one of {choices}, got {value!r}") from exc


def _strip_source_header(content: str) -> str:
    # helm --output-dir already prefixes each file with its own marker.
    lines = content.splitlines(keepends=True)
    if lines and lines[0].strip() == "---":
        lines = lines[1:]
    if lines and lines[0].startswith("# Source:"):
        lines = lines[1:]
    return "".join(lines)


def join_rendered(outputs: Mapping[str, str]) -> str:
    """Concatenate rendered templates into one manifest.

    Notes files and empty renders are skipped; every kept template is
    prefixed with a ``---`` / ``# Source: <path>`` marker.
    """

    parts = []
    for path in sorted(outputs):
        if Path(path).name == NOTES_FILE:
            continue
        content = _strip_source_header(outputs[path])
        if not content.strip():
            continue
        if not content.endswith("\n"):
            content += "\n"
        parts.append(f"---\n# Source: {path}\n{content}")
    return "".join(parts)


def collect_rendered(root: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if path.is_file():
            outputs[path.relative_to(root).as_posix()] = path.read_text(encoding="utf-8")
    return outputs


class HelmRenderer:
    """Renders charts to manifest text through ``helm template``."""

    def __init__(
        self,
        helm_bin: str = "helm",
        *,
        release_name: str = RELEASE_NAME,
        namespace: str = RELEASE_NAMESPACE,
    ) -> None:
        self.helm_bin = helm_bin
        self.release_name = release_name
        self.namespace = namespace

    def render_chart(self, chart: str) -> str:
        with tempfile.TemporaryDirectory(prefix="lab-chart-") as out_dir:
            cmd = [
                self.helm_bin,
                "template",
                self.release_name,
                chart,
                "--namespace",
                self.namespace,
                "--output-dir",
                out_dir,
            ]
            try:
                subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True)
            except FileNotFoundError as exc:
                raise RenderError(f"{self.helm_bin} executable not found") from exc
            except subprocess.CalledProcessError as exc:
                stderr = (exc.stderr or b"").decode("utf-8", errors="ignore").strip()
                raise RenderError(f"helm template failed for {chart}: {stderr or exc}") from exc
            manifest = join_rendered(collect_rendered(Path(out_dir)))
        logger.info("Rendered chart %s", chart)
        return manifest

    def render_archive(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="lab-archive-") as tmp_dir:
            archive = Path(tmp_dir) / "chart.tgz"
            archive.write_bytes(data)
            return self.render_chart(str(archive))


@dataclass
class RawManifest:
    text: str

    def render(self) -> str:
        return self.text


@dataclass
class ChartArchive:
    data: bytes
    renderer: HelmRenderer

    def render(self) -> str:
        return self.renderer.render_archive(self.data)


@dataclass
class ChartReference:
    ref: str
    renderer: HelmRenderer

    def render(self) -> str:
        return self.renderer.render_chart(self.ref)


ManifestSource = Union[RawManifest, ChartArchive, ChartReference]


def build_manifest_source(
    mode: Union[str, DeploymentMode],
    payload: Union[str, bytes, None],
    renderer: HelmRenderer,
) -> ManifestSource:
    """Validate a deployment mode and its payload without touching the cluster."""

    if not isinstance(mode, DeploymentMode):
        mode = DeploymentMode.parse(mode)
    if payload is None or (isinstance(payload, (str, bytes)) and not payload.strip()):
        raise ValidationError(f"config is required for deploymentMode {mode.value}")

    if mode is DeploymentMode.YAML:
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValidationError(f"config is not valid UTF-8: {exc}") from exc
        return RawManifest(payload)
    if mode is DeploymentMode.CHART:
        if not isinstance(payload, bytes):
            raise ValidationError("config must be a chart archive for deploymentMode CHART")
        return ChartArchive(payload, renderer)
    if not isinstance(payload, str):
        raise ValidationError("config must be a chart reference for deploymentMode CHART_URL")
    return ChartReference(payload.strip(), renderer)


__all__ = [
    "ChartArchive",
    "ChartReference",
    "DeploymentMode",
    "HelmRenderer",
    "ManifestSource",
    "RawManifest",
    "build_manifest_source",
    "collect_rendered",
    "join_rendered",
]

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
import uvicorn

from src.charts.renderer import DeploymentMode, HelmRenderer, build_manifest_source
from src.cluster.errors import ProvisioningError
from src.common.naming import normalise_lab_name
from src.common.settings import Settings
from src.provisioner.orchestrator import LabOrchestrator, derive_tenant_namespaces
from src.roster.roster import RosterEntry, parse_roster

from .server import app as api_app

app = typer.Typer(help="Provision per-student lab environments on a Kubernetes cluster.")


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(levelname)s: %(message)s")


def _load_settings() -> Settings:
    try:
        settings = Settings.from_env()
    except ProvisioningError as exc:
        raise typer.BadParameter(str(exc)) from exc
    _configure_logging(settings.log_level)
    return settings


def _load_roster(path: Path) -> List[RosterEntry]:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise typer.BadParameter(f"Roster file not readable: {path}: {exc}") from exc
    try:
        return parse_roster(data)
    except ProvisioningError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _fail(exc: ProvisioningError) -> NoReturn:
    typer.echo(f"error: {exc}", err=True)
    raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind (default: LAB_HOST or 0.0.0.0)."),
    port: Optional[int] = typer.Option(None, help="Port to listen on (default: LAB_PORT or 3000)."),
) -> None:
    """Serve the HTTP API; the cluster-wide role is ensured at startup."""

    settings = _load_settings()
    uvicorn.run(api_app, host=host or settings.host, port=port or settings.port)


@app.command()
def bootstrap() -> None:
    """Create the namespace-listing cluster role if it is missing."""

    settings = _load_settings()
    try:
        created = LabOrchestrator.from_settings(settings).bootstrap()
    except ProvisioningError as exc:
        _fail(exc)
    typer.echo("Created cluster role" if created else "Cluster role already present")


@app.command("create-lab")
def create_lab(
    roster: Path = typer.Option(..., "--roster", "-r", help="Roster CSV (id, name, group)."),
    lab_name: str = typer.Option(..., "--lab", "-l", help="Lab name."),
    mode: DeploymentMode = typer.Option(DeploymentMode.YAML, "--mode", "-m", help="How --config is interpreted."),
    config: str = typer.Option(..., "--config", "-c", help="Manifest file, chart archive, or chart reference."),
    group: bool = typer.Option(False, "--group/--individual", help="Provision one namespace per group."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the tenant tokens to this JSON file."),
) -> None:
    settings = _load_settings()
    entries = _load_roster(roster)
    renderer = HelmRenderer(settings.helm_bin)
    if mode is DeploymentMode.CHART_URL:
        payload = config
    else:
        path = Path(config)
        if not path.is_file():
            raise typer.BadParameter(f"Config file not found: {path}")
        payload = path.read_bytes()

    try:
        source = build_manifest_source(mode, payload, renderer)
        orchestrator = LabOrchestrator.from_settings(settings)
        orchestrator.bootstrap()
        result = orchestrator.create_lab(lab_name, entries, not group, source)
    except ProvisioningError as exc:
        _fail(exc)

    body = json.dumps(result.credentials, indent=2)
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(body, encoding="utf-8")
        typer.echo(f"Wrote {len(result.credentials)} token(s) to {out.resolve()}")
    else:
        typer.echo(body)


@app.command("delete-lab")
def delete_lab(lab_name: str = typer.Argument(..., help="Lab name.")) -> None:
    settings = _load_settings()
    try:
        deleted = LabOrchestrator.from_settings(settings).delete_lab(lab_name)
    except ProvisioningError as exc:
        _fail(exc)
    typer.echo(f"Deleted {len(deleted)} object(s)")


@app.command()
def namespaces(
    roster: Path = typer.Option(..., "--roster", "-r", help="Roster CSV (id, name, group)."),
    lab_name: str = typer.Option(..., "--lab", "-l", help="Lab name."),
    group: bool = typer.Option(False, "--group/--individual", help="One namespace per group."),
) -> None:
    """Print the namespaces a roster maps to, without contacting the cluster."""

    entries = _load_roster(roster)
    try:
        name = normalise_lab_name(lab_name)
    except ProvisioningError as exc:
        raise typer.BadParameter(str(exc)) from exc
    for namespace in derive_tenant_namespaces(entries, name, not group):
        typer.echo(namespace)


if __name__ == "__main__":  # pragma: no cover
    app()

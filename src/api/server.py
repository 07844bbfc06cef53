from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from src.charts.renderer import DeploymentMode, HelmRenderer, build_manifest_source
from src.cluster.errors import (
    CancelledError,
    CredentialTimeoutError,
    DecodeError,
    ProvisioningError,
    RemoteAPIError,
    RenderError,
    ValidationError,
)
from src.common.settings import Settings
from src.provisioner.orchestrator import LabOrchestrator
from src.roster.roster import RosterEntry, parse_roster

logger = logging.getLogger(__name__)

CSV_TYPES = ("text/csv",)
YAML_TYPES = ("text/yaml", "application/yaml", "application/x-yaml")
CHART_TYPES = ("application/gzip", "application/octet-stream")
DISCONNECT_POLL_SECONDS = 0.5


class DeleteResponse(BaseModel):
    deleted: List[str] = Field(..., description="Namespaces and cluster role bindings removed")


def _content_type(upload: UploadFile) -> str:
    return (upload.content_type or "").split(";")[0].strip().lower()


async def _read_upload(form: Any, field_name: str, content_types: Sequence[str]) -> bytes:
    upload = form.get(field_name)
    if not isinstance(upload, UploadFile):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Something went wrong while reading file {field_name}",
        )
    if _content_type(upload) not in content_types:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"{field_name} must be one of {', '.join(content_types)} types",
        )
    return await upload.read()


async def _run_until_disconnect(
    request: Request,
    cancel: threading.Event,
    func: Callable[..., Any],
    *args: Any,
) -> Any:
    """Run ``func(*args, cancel=cancel)`` on the threadpool; set ``cancel`` once the client goes away."""

    work = asyncio.ensure_future(run_in_threadpool(func, *args, cancel=cancel))
    try:
        while True:
            done, _ = await asyncio.wait({work}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return work.result()
            if not cancel.is_set() and await request.is_disconnected():
                logger.info("Client disconnected; cancelling %s", request.url.path)
                cancel.set()
    finally:
        # Also reached when the server cancels this coroutine.
        cancel.set()


def _error_status(exc: ProvisioningError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, DecodeError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, CredentialTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, CancelledError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(exc: ProvisioningError, action: str) -> HTTPException:
    code = _error_status(exc)
    if isinstance(exc, (RemoteAPIError, RenderError)):
        logger.error("%s failed: %s", action, exc)
        detail = f"Something went wrong while {action}: {exc}"
    else:
        detail = str(exc)
    return HTTPException(status_code=code, detail=detail)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        # The namespace-listing cluster role must exist before the first lab is created.
        provider = application.dependency_overrides.get(get_orchestrator, get_orchestrator)
        await run_in_threadpool(provider().bootstrap)
        yield

    app = FastAPI(
        lifespan=lifespan,
        title="K8s Lab Provisioner",
        description="Provisions per-student namespaces, service accounts and RBAC for cluster labs.",
        version="0.1.0",
    )

    @app.get("/", response_class=PlainTextResponse)
    def hello() -> str:
        return "Hello world!"

    @app.post("/lab")
    async def create_lab(
        request: Request,
        orchestrator: LabOrchestrator = Depends(get_orchestrator),
        renderer: HelmRenderer = Depends(get_renderer),
    ) -> Dict[str, str]:
        form = await request.form()
        roster_bytes = await _read_upload(form, "students", CSV_TYPES)
        lab_name = str(form.get("labName") or "")
        individual = form.get("isIndividual") != "false"

        try:
            roster: List[RosterEntry] = parse_roster(roster_bytes)
            mode = DeploymentMode.parse(str(form.get("deploymentMode") or ""))
            payload: Optional[Union[str, bytes]]
            if mode is DeploymentMode.YAML:
                payload = await _read_upload(form, "config", YAML_TYPES)
            elif mode is DeploymentMode.CHART:
                payload = await _read_upload(form, "config", CHART_TYPES)
            else:
                config = form.get("config")
                payload = config if isinstance(config, str) else None
            source = build_manifest_source(mode, payload, renderer)
        except ValidationError as exc:
            raise _http_error(exc, "validating the request") from exc

        try:
            result = await _run_until_disconnect(
                request,
                threading.Event(),
                orchestrator.create_lab,
                lab_name,
                roster,
                individual,
                source,
            )
        except ProvisioningError as exc:
            raise _http_error(exc, f"provisioning lab {lab_name}") from exc
        return result.credentials

    @app.delete("/lab/{lab_name}", response_model=DeleteResponse)
    def delete_lab(
        lab_name: str,
        orchestrator: LabOrchestrator = Depends(get_orchestrator),
    ) -> DeleteResponse:
        try:
            deleted = orchestrator.delete_lab(lab_name)
        except ProvisioningError as exc:
            raise _http_error(exc, f"deleting lab {lab_name}") from exc
        return DeleteResponse(deleted=deleted)

    return app


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache()
def get_orchestrator() -> LabOrchestrator:
    return LabOrchestrator.from_settings(get_settings())


@lru_cache()
def get_renderer() -> HelmRenderer:
    return HelmRenderer(get_settings().helm_bin)


app = create_app()


__all__ = [
    "app",
    "create_app",
    "get_orchestrator",
    "get_renderer",
    "get_settings",
]

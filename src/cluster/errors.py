"""Error taxonomy shared by every provisioning component."""

from __future__ import annotations

from typing import Optional

from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError as TransportError


class ProvisioningError(Exception):
    """Base class for failures surfaced by the provisioner."""


class ValidationError(ProvisioningError):
    """Raised when caller input is malformed; no cluster mutation has happened."""


class DecodeError(ProvisioningError):
    """Raised when a manifest document cannot be decoded or interpreted."""


class RenderError(ProvisioningError):
    """Raised when a chart cannot be rendered into manifest text."""


class CancelledError(ProvisioningError):
    """Raised when the caller cancels an in-flight request."""


class RemoteAPIError(ProvisioningError):
    """A control-plane call failed.

    ``kind`` is a coarse classification (``not_found``, ``conflict``,
    ``forbidden``, ``mapping``, ``timeout`` or ``api``) and ``status`` carries
    the HTTP status reported by the API server when there was one.
    """

    kind = "api"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason
        if kind is not None:
            self.kind = kind


class NotFoundError(RemoteAPIError):
    kind = "not_found"


class ConflictError(RemoteAPIError):
    kind = "conflict"


class CredentialTimeoutError(RemoteAPIError):
    kind = "timeout"


# Everything the kubernetes client raises for a failed control-plane call.
API_ERRORS = (ApiException, ResourceNotFoundError, TransportError)

_STATUS_CLASSES = {
    404: NotFoundError,
    409: ConflictError,
}


def classify(exc: Exception, action: str) -> RemoteAPIError:
    """Translate a kubernetes client exception into a RemoteAPIError."""

    if isinstance(exc, RemoteAPIError):
        return exc
    if isinstance(exc, ResourceNotFoundError):
        return RemoteAPIError(f"{action}: {exc}", kind="mapping")
    if isinstance(exc, ApiException):
        status = exc.status
        error_cls = _STATUS_CLASSES.get(status, RemoteAPIError)
        message = f"{action}: {status} {exc.reason}".rstrip()
        kind = "forbidden" if status in (401, 403) else None
        return error_cls(message, status=status, reason=exc.reason, kind=kind)
    return RemoteAPIError(f"{action}: {exc}")


__all__ = [
    "API_ERRORS",
    "CancelledError",
    "ConflictError",
    "CredentialTimeoutError",
    "DecodeError",
    "NotFoundError",
    "ProvisioningError",
    "RemoteAPIError",
    "RenderError",
    "ValidationError",
    "classify",
]

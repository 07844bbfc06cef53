"""Cluster handles and the error taxonomy for control-plane calls."""

from .context import ClusterContext
from .errors import (
    CancelledError,
    ConflictError,
    CredentialTimeoutError,
    DecodeError,
    NotFoundError,
    ProvisioningError,
    RemoteAPIError,
    RenderError,
    ValidationError,
)

__all__ = [
    "CancelledError",
    "ClusterContext",
    "ConflictError",
    "CredentialTimeoutError",
    "DecodeError",
    "NotFoundError",
    "ProvisioningError",
    "RemoteAPIError",
    "RenderError",
    "ValidationError",
]

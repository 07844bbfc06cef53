"""Naming conventions for every cluster object the provisioner derives."""

from __future__ import annotations

import re

from src.cluster.errors import ValidationError

NAMESPACE_PREFIX = "ns-"
LAB_ROLE = "student"
TENANT_ROLE = "student"
TENANT_BINDING = "student-binding"
CLUSTER_READ_ROLE = "read-namespaces-cr"
CLUSTER_READ_BINDING_PREFIX = "read-namespaces-crb-"
NO_GROUP = -1

_LAB_NAME_PATTERN = re.compile(r"^[a-z0-9]+$")


def normalise_lab_name(raw: str) -> str:
    """Strip hyphens from a lab name and reject anything that is not [a-z0-9]+."""

    name = (raw or "").replace("-", "").strip()
    if not name:
        raise ValidationError("lab name is required")
    if not _LAB_NAME_PATTERN.match(name):
        raise ValidationError(f"lab name {raw!r} may only contain lowercase letters and digits")
    return name


def slugify_display_name(name: str) -> str:
    # Single spaces only: "Jane  Doe" -> "jane--doe".
    return "-".join(name.lower().split(" "))


def lab_namespace(lab_name: str) -> str:
    return f"{NAMESPACE_PREFIX}{lab_name}"


def tenant_prefix(lab_name: str) -> str:
    return f"{lab_namespace(lab_name)}-"


def tenant_namespace(lab_name: str, tenant_key: str) -> str:
    return f"{tenant_prefix(lab_name)}{tenant_key}"


def group_key(group: int) -> str:
    return f"group-{group}"


def tenant_key_from_namespace(lab_name: str, namespace: str) -> str:
    prefix = tenant_prefix(lab_name)
    if not namespace.startswith(prefix):
        raise ValueError(f"namespace {namespace} does not belong to lab {lab_name}")
    return namespace[len(prefix):]


def lab_read_binding(tenant_key: str) -> str:
    return f"{TENANT_BINDING}-{tenant_key}"


def cluster_read_binding_prefix(lab_name: str) -> str:
    return f"{CLUSTER_READ_BINDING_PREFIX}{lab_name}-"


def cluster_read_binding(lab_name: str, tenant_key: str) -> str:
    return f"{cluster_read_binding_prefix(lab_name)}{tenant_key}"


def belongs_to_lab(lab_name: str, namespace: str) -> bool:
    return namespace == lab_namespace(lab_name) or namespace.startswith(tenant_prefix(lab_name))


__all__ = [
    "CLUSTER_READ_BINDING_PREFIX",
    "CLUSTER_READ_ROLE",
    "LAB_ROLE",
    "NAMESPACE_PREFIX",
    "NO_GROUP",
    "TENANT_BINDING",
    "TENANT_ROLE",
    "belongs_to_lab",
    "cluster_read_binding",
    "cluster_read_binding_prefix",
    "group_key",
    "lab_namespace",
    "lab_read_binding",
    "normalise_lab_name",
    "slugify_display_name",
    "tenant_key_from_namespace",
    "tenant_namespace",
    "tenant_prefix",
]

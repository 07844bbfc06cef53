"""Namespace, RBAC and manifest provisioning for labs."""

from .manifest import ManifestDistributor, parse_manifest
from .namespaces import NamespaceManager
from .orchestrator import LabOrchestrator, LabResult, derive_tenant_namespaces
from .rbac import RBACProvisioner

__all__ = [
    "LabOrchestrator",
    "LabResult",
    "ManifestDistributor",
    "NamespaceManager",
    "RBACProvisioner",
    "derive_tenant_namespaces",
    "parse_manifest",
]

from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from src.charts.renderer import ManifestSource
from src.cluster.context import ClusterContext
from src.cluster.errors import CancelledError, ValidationError
from src.common import naming
from src.common.settings import Settings
from src.roster.roster import RosterEntry

from .manifest import AppliedObject, ManifestDistributor
from .namespaces import NamespaceManager
from .rbac import LAB_READ_VERBS, RBACProvisioner

logger = logging.getLogger(__name__)

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_MAX_NAMESPACE_LENGTH = 63


def derive_tenant_namespaces(
    roster: Sequence[RosterEntry],
    lab_name: str,
    individual: bool = True,
) -> List[str]:
    """Namespace names for ``roster``, in roster order.

    Individual mode yields one namespace per entry; group mode yields one per
    distinct group in first-seen order and ignores entries without a group.
    """

    if individual:
        return [
            naming.tenant_namespace(lab_name, naming.slugify_display_name(entry.name))
            for entry in roster
        ]

    namespaces: List[str] = []
    seen = set()
    for entry in roster:
        if entry.group == naming.NO_GROUP or entry.group in seen:
            continue
        seen.add(entry.group)
        namespaces.append(naming.tenant_namespace(lab_name, naming.group_key(entry.group)))
    return namespaces


def _validate_namespaces(lab_name: str, namespaces: Sequence[str]) -> None:
    invalid = [
        namespace
        for namespace in namespaces
        if len(namespace) > _MAX_NAMESPACE_LENGTH
        or not _DNS_LABEL.match(naming.tenant_key_from_namespace(lab_name, namespace))
    ]
    if invalid:
        raise ValidationError(f"roster produces invalid namespace names: {', '.join(invalid)}")


@dataclass
class LabResult:
    lab_name: str
    lab_created: bool
    credentials: Dict[str, str] = field(default_factory=dict)
    new_namespaces: List[str] = field(default_factory=list)
    applied: List[AppliedObject] = field(default_factory=list)


@dataclass
class _LabLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class LabLocks:
    """One lock per lab name, kept only while a request holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _LabLock] = {}

    @contextmanager
    def hold(self, lab_name: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(lab_name, _LabLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[lab_name]

    def active(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)


def _check_cancelled(cancel: Optional[threading.Event], lab_name: str) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError(f"provisioning of lab {lab_name} was cancelled")


class LabOrchestrator:
    def __init__(
        self,
        context: ClusterContext,
        settings: Optional[Settings] = None,
        *,
        locks: Optional[LabLocks] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.namespaces = NamespaceManager(context)
        self.rbac = RBACProvisioner(context, self.settings)
        self.distributor = ManifestDistributor(context)
        self.locks = locks or LabLocks()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LabOrchestrator":
        settings = settings or Settings.from_env()
        return cls(ClusterContext.from_settings(settings), settings)

    def bootstrap(self) -> bool:
        return self.rbac.ensure_cluster_read_role()

    def create_lab(
        self,
        lab_name: str,
        roster: Sequence[RosterEntry],
        individual: bool,
        manifest_source: ManifestSource,
        cancel: Optional[threading.Event] = None,
    ) -> LabResult:
        """Create a lab or add the tenants it does not have yet.

        Nothing is rolled back on failure; re-running with the same roster
        resumes from the namespaces that already exist.
        """

        lab_name = naming.normalise_lab_name(lab_name)
        tenant_namespaces = derive_tenant_namespaces(roster, lab_name, individual)
        _validate_namespaces(lab_name, tenant_namespaces)

        with self.locks.hold(lab_name):
            lab_namespace = naming.lab_namespace(lab_name)
            lab_existed = self.namespaces.exists(lab_namespace)
            if not lab_existed:
                self.namespaces.create(lab_namespace)
                self.rbac.create_role(naming.LAB_ROLE, lab_namespace, LAB_READ_VERBS)

            result = LabResult(lab_name=lab_name, lab_created=not lab_existed)
            for namespace in tenant_namespaces:
                _check_cancelled(cancel, lab_name)
                if namespace in result.new_namespaces:
                    continue
                if self.namespaces.ensure(namespace):
                    result.new_namespaces.append(namespace)

            for namespace in result.new_namespaces:
                _check_cancelled(cancel, lab_name)
                tenant_key = naming.tenant_key_from_namespace(lab_name, namespace)
                token = self.rbac.provision_identity(tenant_key, namespace, cancel)
                self.rbac.grant_tenant_full_access(tenant_key, namespace)
                self.rbac.grant_lab_read_access(lab_namespace, tenant_key, namespace)
                self.rbac.grant_cluster_read(lab_name, tenant_key, namespace)
                result.credentials[tenant_key] = token

            _check_cancelled(cancel, lab_name)
            manifest = manifest_source.render()
            result.applied = self.distributor.distribute(
                manifest,
                lab_name,
                result.new_namespaces,
                lab_existed,
            )

        logger.info(
            "Lab %s: %s, %d new tenant namespace(s)",
            lab_name,
            "created" if result.lab_created else "extended",
            len(result.new_namespaces),
        )
        return result

    def delete_lab(self, lab_name: str) -> List[str]:
        """Delete the lab's namespaces and cluster role bindings.

        Stops at the first failed deletion; returns the names deleted.
        """

        lab_name = naming.normalise_lab_name(lab_name)
        deleted: List[str] = []
        with self.locks.hold(lab_name):
            for namespace in self.namespaces.list_names():
                if naming.belongs_to_lab(lab_name, namespace):
                    self.namespaces.delete(namespace)
                    deleted.append(namespace)

            prefix = naming.cluster_read_binding_prefix(lab_name)
            for binding in self.rbac.list_cluster_role_bindings():
                if binding.startswith(prefix):
                    self.rbac.delete_cluster_role_binding(binding)
                    deleted.append(binding)

        logger.info("Deleted lab %s (%d object(s))", lab_name, len(deleted))
        return deleted


__all__ = [
    "LabLocks",
    "LabOrchestrator",
    "LabResult",
    "derive_tenant_namespaces",
]

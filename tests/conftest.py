import base64
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from src.cluster.context import ClusterContext
from src.common.settings import Settings
from src.provisioner.orchestrator import LabOrchestrator


def _meta(name: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def _listing(names) -> SimpleNamespace:
    return SimpleNamespace(items=[_meta(name) for name in names])


class _Failures:
    """Lets a test make one call fail: ``fail("create_namespace", "ns-x", 500)``."""

    def __init__(self) -> None:
        self._failures: Dict[Tuple[str, Optional[str]], int] = {}

    def fail(self, method: str, name: Optional[str] = None, status: int = 500) -> None:
        self._failures[(method, name)] = status

    def check(self, method: str, name: Optional[str]) -> None:
        status = self._failures.get((method, name), self._failures.get((method, None)))
        if status is not None:
            raise ApiException(status=status, reason="Injected")


class FakeCoreV1(_Failures):
    def __init__(self) -> None:
        super().__init__()
        self.namespaces: List[str] = []
        self.service_accounts: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.calls: List[Tuple[str, str]] = []
        # Number of reads after which a service account gets its token secret; None means never.
        self.token_delay: Optional[int] = 1

    def list_namespace(self):
        self.check("list_namespace", None)
        return _listing(list(self.namespaces))

    def create_namespace(self, body):
        name = body.metadata.name
        self.calls.append(("create_namespace", name))
        self.check("create_namespace", name)
        if name in self.namespaces:
            raise ApiException(status=409, reason="Conflict")
        self.namespaces.append(name)

    def delete_namespace(self, name):
        self.calls.append(("delete_namespace", name))
        self.check("delete_namespace", name)
        if name not in self.namespaces:
            raise ApiException(status=404, reason="Not Found")
        self.namespaces.remove(name)

    def create_namespaced_service_account(self, namespace, body):
        name = body.metadata.name
        self.calls.append(("create_namespaced_service_account", f"{namespace}/{name}"))
        self.check("create_namespaced_service_account", name)
        if namespace not in self.namespaces:
            raise ApiException(status=404, reason="Not Found")
        if (namespace, name) in self.service_accounts:
            raise ApiException(status=409, reason="Conflict")
        self.service_accounts[(namespace, name)] = {"reads": 0, "secrets": []}

    def read_namespaced_service_account(self, name, namespace):
        self.check("read_namespaced_service_account", name)
        account = self.service_accounts.get((namespace, name))
        if account is None:
            raise ApiException(status=404, reason="Not Found")
        account["reads"] += 1
        if self.token_delay is not None and account["reads"] > self.token_delay and not account["secrets"]:
            secret_name = f"{name}-token-x7k2p"
            token = f"token-{namespace}-{name}"
            self.secrets[(namespace, secret_name)] = {"token": base64.b64encode(token.encode()).decode()}
            account["secrets"].append(SimpleNamespace(name=secret_name))
        return SimpleNamespace(metadata=SimpleNamespace(name=name), secrets=list(account["secrets"]) or None)

    def read_namespaced_secret(self, name, namespace):
        self.check("read_namespaced_secret", name)
        data = self.secrets.get((namespace, name))
        if data is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(data=dict(data))

    def create_namespaced_service_account_token(self, name, namespace, body):
        self.calls.append(("create_namespaced_service_account_token", f"{namespace}/{name}"))
        return SimpleNamespace(status=SimpleNamespace(token=f"requested-{namespace}-{name}"))


class FakeRbacV1(_Failures):
    def __init__(self) -> None:
        super().__init__()
        self.cluster_roles: Dict[str, Any] = {}
        self.roles: Dict[Tuple[str, str], Any] = {}
        self.role_bindings: Dict[Tuple[str, str], Any] = {}
        self.cluster_role_bindings: Dict[str, Any] = {}
        self.calls: List[Tuple[str, str]] = []

    def read_cluster_role(self, name):
        self.check("read_cluster_role", name)
        if name not in self.cluster_roles:
            raise ApiException(status=404, reason="Not Found")
        return self.cluster_roles[name]

    def create_cluster_role(self, body):
        name = body.metadata.name
        self.calls.append(("create_cluster_role", name))
        if name in self.cluster_roles:
            raise ApiException(status=409, reason="Conflict")
        self.cluster_roles[name] = body

    def create_namespaced_role(self, namespace, body):
        key = (namespace, body.metadata.name)
        self.calls.append(("create_namespaced_role", "/".join(key)))
        self.check("create_namespaced_role", body.metadata.name)
        if key in self.roles:
            raise ApiException(status=409, reason="Conflict")
        self.roles[key] = body

    def create_namespaced_role_binding(self, namespace, body):
        key = (namespace, body.metadata.name)
        self.calls.append(("create_namespaced_role_binding", "/".join(key)))
        self.check("create_namespaced_role_binding", body.metadata.name)
        if key in self.role_bindings:
            raise ApiException(status=409, reason="Conflict")
        self.role_bindings[key] = body

    def create_cluster_role_binding(self, body):
        name = body.metadata.name
        self.calls.append(("create_cluster_role_binding", name))
        self.check("create_cluster_role_binding", name)
        if name in self.cluster_role_bindings:
            raise ApiException(status=409, reason="Conflict")
        self.cluster_role_bindings[name] = body

    def list_cluster_role_binding(self):
        self.check("list_cluster_role_binding", None)
        return _listing(list(self.cluster_role_bindings))

    def delete_cluster_role_binding(self, name):
        self.calls.append(("delete_cluster_role_binding", name))
        self.check("delete_cluster_role_binding", name)
        if name not in self.cluster_role_bindings:
            raise ApiException(status=404, reason="Not Found")
        del self.cluster_role_bindings[name]


class FakeResource:
    def __init__(self, api_version: str, kind: str, namespaced: bool) -> None:
        self.api_version = api_version
        self.kind = kind
        self.namespaced = namespaced


KNOWN_KINDS = {
    ("v1", "ConfigMap"): True,
    ("v1", "Service"): True,
    ("v1", "Secret"): True,
    ("apps/v1", "Deployment"): True,
    ("rbac.authorization.k8s.io/v1", "ClusterRole"): False,
    ("v1", "PersistentVolume"): False,
}


class FakeResources:
    def __init__(self) -> None:
        self.lookups: List[Tuple[str, str]] = []

    def get(self, api_version, kind):
        self.lookups.append((api_version, kind))
        if (api_version, kind) not in KNOWN_KINDS:
            raise ResourceNotFoundError(f"No matches found for {{'api_version': '{api_version}', 'kind': '{kind}'}}")
        return FakeResource(api_version, kind, KNOWN_KINDS[(api_version, kind)])


class FakeDynamic(_Failures):
    def __init__(self) -> None:
        super().__init__()
        self.resources = FakeResources()
        self.objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}
        self.created: List[Tuple[str, Optional[str], str]] = []

    def create(self, resource, body=None, namespace=None):
        name = body["metadata"]["name"]
        self.check("create", name)
        key = (resource.kind, namespace, name)
        if key in self.objects:
            raise ApiException(status=409, reason="Conflict")
        self.objects[key] = body
        self.created.append(key)
        return body

    def in_namespace(self, namespace: Optional[str]) -> List[Tuple[str, Optional[str], str]]:
        return [key for key in self.created if key[1] == namespace]


class FakeCluster:
    def __init__(self) -> None:
        self.core = FakeCoreV1()
        self.rbac = FakeRbacV1()
        self.dynamic = FakeDynamic()
        self.context = ClusterContext(core_v1=self.core, rbac_v1=self.rbac, dynamic=self.dynamic)


FAST_SETTINGS = Settings(
    credential_timeout=5.0,
    credential_poll_interval=0.0,
    credential_max_interval=0.0,
    credential_max_attempts=5,
)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def settings() -> Settings:
    return FAST_SETTINGS


@pytest.fixture
def orchestrator(cluster: FakeCluster, settings: Settings) -> LabOrchestrator:
    return LabOrchestrator(cluster.context, settings)

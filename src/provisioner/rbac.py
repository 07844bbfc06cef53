"""RBAC and identity provisioning for lab tenants."""

from __future__ import annotations

import base64
import logging
import threading
import time
from typing import List, Optional, Sequence

from kubernetes import client

from src.cluster.context import ClusterContext
from src.cluster.errors import (
    API_ERRORS,
    CancelledError,
    CredentialTimeoutError,
    NotFoundError,
    RemoteAPIError,
    classify,
)
from src.common import naming
from src.common.settings import Settings

logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"
LAB_READ_VERBS = ["list", "get", "watch"]
FULL_ACCESS_VERBS = ["*"]


def _service_account_subject(name: str, namespace: str) -> client.RbacV1Subject:
    return client.RbacV1Subject(kind="ServiceAccount", name=name, namespace=namespace)


def build_role(name: str, namespace: str, verbs: Sequence[str]) -> client.V1Role:
    """Role granting ``verbs`` on every resource of every API group."""

    return client.V1Role(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        rules=[client.V1PolicyRule(api_groups=["*"], resources=["*"], verbs=list(verbs))],
    )


def build_role_binding(
    name: str,
    namespace: str,
    username: str,
    user_namespace: str,
    role_name: str,
) -> client.V1RoleBinding:
    return client.V1RoleBinding(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        subjects=[_service_account_subject(username, user_namespace)],
        role_ref=client.V1RoleRef(api_group=RBAC_API_GROUP, kind="Role", name=role_name),
    )


def build_cluster_read_role() -> client.V1ClusterRole:
    return client.V1ClusterRole(
        metadata=client.V1ObjectMeta(name=naming.CLUSTER_READ_ROLE),
        rules=[client.V1PolicyRule(api_groups=[""], resources=["namespaces"], verbs=["get", "list"])],
    )


def build_cluster_read_binding(lab_name: str, tenant_key: str, namespace: str) -> client.V1ClusterRoleBinding:
    return client.V1ClusterRoleBinding(
        metadata=client.V1ObjectMeta(name=naming.cluster_read_binding(lab_name, tenant_key)),
        subjects=[_service_account_subject(tenant_key, namespace)],
        role_ref=client.V1RoleRef(api_group=RBAC_API_GROUP, kind="ClusterRole", name=naming.CLUSTER_READ_ROLE),
    )


class RBACProvisioner:
    def __init__(self, context: ClusterContext, settings: Optional[Settings] = None) -> None:
        self.core_v1 = context.core_v1
        self.rbac_v1 = context.rbac_v1
        self.settings = settings or Settings()

    # Cluster-wide bootstrap

    def cluster_read_role_exists(self) -> bool:
        try:
            self.rbac_v1.read_cluster_role(name=naming.CLUSTER_READ_ROLE)
        except API_ERRORS as exc:
            error = classify(exc, f"reading cluster role {naming.CLUSTER_READ_ROLE}")
            if isinstance(error, NotFoundError):
                return False
            raise error from exc
        return True

    def ensure_cluster_read_role(self) -> bool:
        """Create the namespace-listing ClusterRole once; returns True when created."""

        if self.cluster_read_role_exists():
            return False
        try:
            self.rbac_v1.create_cluster_role(body=build_cluster_read_role())
        except API_ERRORS as exc:
            raise classify(exc, f"creating cluster role {naming.CLUSTER_READ_ROLE}") from exc
        logger.info("Created cluster role %s", naming.CLUSTER_READ_ROLE)
        return True

    # Roles and bindings

    def create_role(self, name: str, namespace: str, verbs: Sequence[str]) -> None:
        try:
            self.rbac_v1.create_namespaced_role(namespace=namespace, body=build_role(name, namespace, verbs))
        except API_ERRORS as exc:
            raise classify(exc, f"creating role {name} in {namespace}") from exc
        logger.info("Created role %s in %s (verbs=%s)", name, namespace, ",".join(verbs))

    def create_role_binding(
        self,
        name: str,
        namespace: str,
        username: str,
        user_namespace: str,
        role_name: str,
    ) -> None:
        body = build_role_binding(name, namespace, username, user_namespace, role_name)
        try:
            self.rbac_v1.create_namespaced_role_binding(namespace=namespace, body=body)
        except API_ERRORS as exc:
            raise classify(exc, f"creating role binding {name} in {namespace}") from exc
        logger.info("Bound role %s to %s/%s in %s", role_name, user_namespace, username, namespace)

    def grant_tenant_full_access(
        self,
        tenant_key: str,
        namespace: str,
        verbs: Sequence[str] = FULL_ACCESS_VERBS,
    ) -> None:
        self.create_role(naming.TENANT_ROLE, namespace, verbs)
        self.create_role_binding(naming.TENANT_BINDING, namespace, tenant_key, namespace, naming.TENANT_ROLE)

    def grant_lab_read_access(self, lab_namespace: str, tenant_key: str, tenant_namespace: str) -> None:
        # The binding lives in the lab namespace; the subject stays in its own namespace.
        self.create_role_binding(
            naming.lab_read_binding(tenant_key),
            lab_namespace,
            tenant_key,
            tenant_namespace,
            naming.LAB_ROLE,
        )

    def grant_cluster_read(self, lab_name: str, tenant_key: str, tenant_namespace: str) -> None:
        body = build_cluster_read_binding(lab_name, tenant_key, tenant_namespace)
        name = body.metadata.name
        try:
            self.rbac_v1.create_cluster_role_binding(body=body)
        except API_ERRORS as exc:
            raise classify(exc, f"creating cluster role binding {name}") from exc
        logger.info("Created cluster role binding %s", name)

    def list_cluster_role_bindings(self) -> List[str]:
        try:
            bindings = self.rbac_v1.list_cluster_role_binding()
        except API_ERRORS as exc:
            raise classify(exc, "listing cluster role bindings") from exc
        return [item.metadata.name for item in bindings.items]

    def delete_cluster_role_binding(self, name: str) -> None:
        try:
            self.rbac_v1.delete_cluster_role_binding(name=name)
        except API_ERRORS as exc:
            raise classify(exc, f"deleting cluster role binding {name}") from exc
        logger.info("Deleted cluster role binding %s", name)

    # Identities

    def provision_identity(
        self,
        tenant_key: str,
        namespace: str,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Create the tenant's ServiceAccount and return its bearer token."""

        body = client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=tenant_key, namespace=namespace))
        try:
            self.core_v1.create_namespaced_service_account(namespace=namespace, body=body)
        except API_ERRORS as exc:
            raise classify(exc, f"creating service account {tenant_key} in {namespace}") from exc
        logger.info("Created service account %s in %s", tenant_key, namespace)

        if self.settings.credential_mode == "token-request":
            return self._request_token(tenant_key, namespace)
        secret_name = self._wait_for_token_secret(tenant_key, namespace, cancel)
        return self._read_token(secret_name, namespace)

    def _wait_for_token_secret(
        self,
        name: str,
        namespace: str,
        cancel: Optional[threading.Event],
    ) -> str:
        settings = self.settings
        deadline = time.monotonic() + settings.credential_timeout
        delay = settings.credential_poll_interval
        for attempt in range(1, settings.credential_max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise CancelledError(f"cancelled while waiting for the token of {namespace}/{name}")
            try:
                account = self.core_v1.read_namespaced_service_account(name=name, namespace=namespace)
            except API_ERRORS as exc:
                raise classify(exc, f"reading service account {name} in {namespace}") from exc
            if account.secrets:
                return account.secrets[0].name

            remaining = deadline - time.monotonic()
            if attempt >= settings.credential_max_attempts or remaining <= 0:
                break
            logger.debug("No token secret for %s/%s yet (attempt %d)", namespace, name, attempt)
            self._pause(min(delay, remaining), cancel)
            delay = min(delay * 2, settings.credential_max_interval)

        raise CredentialTimeoutError(
            f"service account {namespace}/{name} has no token secret after "
            f"{settings.credential_max_attempts} attempt(s) or {settings.credential_timeout}s"
        )

    @staticmethod
    def _pause(seconds: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise CancelledError("cancelled while waiting for a service account token")

    def _read_token(self, secret_name: str, namespace: str) -> str:
        try:
            secret = self.core_v1.read_namespaced_secret(name=secret_name, namespace=namespace)
        except API_ERRORS as exc:
            raise classify(exc, f"reading secret {secret_name} in {namespace}") from exc
        encoded = (secret.data or {}).get("token")
        if not encoded:
            raise RemoteAPIError(f"secret {namespace}/{secret_name} carries no token", kind="credential")
        return base64.b64decode(encoded).decode("utf-8")

    def _request_token(self, name: str, namespace: str) -> str:
        body = client.AuthenticationV1TokenRequest(
            spec=client.V1TokenRequestSpec(
                audiences=[],
                expiration_seconds=self.settings.token_expiration_seconds,
            )
        )
        try:
            response = self.core_v1.create_namespaced_service_account_token(name=name, namespace=namespace, body=body)
        except API_ERRORS as exc:
            raise classify(exc, f"requesting token for {namespace}/{name}") from exc
        return response.status.token


__all__ = [
    "FULL_ACCESS_VERBS",
    "LAB_READ_VERBS",
    "RBACProvisioner",
    "build_cluster_read_binding",
    "build_cluster_read_role",
    "build_role",
    "build_role_binding",
]

from __future__ import annotations

import logging
from typing import List

from kubernetes import client

from src.cluster.context import ClusterContext
from src.cluster.errors import API_ERRORS, classify

logger = logging.getLogger(__name__)


class NamespaceManager:
    """Existence checks and idempotent creation of namespaces."""

    def __init__(self, context: ClusterContext) -> None:
        self.core_v1 = context.core_v1

    def list_names(self) -> List[str]:
        try:
            namespaces = self.core_v1.list_namespace()
        except API_ERRORS as exc:
            raise classify(exc, "listing namespaces") from exc
        return [item.metadata.name for item in namespaces.items]

    def exists(self, name: str) -> bool:
        return name in self.list_names()

    def create(self, name: str) -> None:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            self.core_v1.create_namespace(body=body)
        except API_ERRORS as exc:
            raise classify(exc, f"creating namespace {name}") from exc
        logger.info("Created namespace %s", name)

    def ensure(self, name: str) -> bool:
        """Create ``name`` unless it already exists; returns True when created."""

        if self.exists(name):
            return False
        self.create(name)
        return True

    def delete(self, name: str) -> None:
        try:
            self.core_v1.delete_namespace(name=name)
        except API_ERRORS as exc:
            raise classify(exc, f"deleting namespace {name}") from exc
        logger.info("Deleted namespace %s", name)


__all__ = ["NamespaceManager"]

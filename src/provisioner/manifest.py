"""Distribution of a multi-document manifest across a lab's namespaces.

Every document carries an optional ``metadata.single_instance`` flag (default
true). Single-instance documents are created once, in the lab namespace, the
first time the lab is provisioned. The remaining documents are replicated into
every tenant namespace created by the current request, which is what lets
"create a lab" and "add tenants to a lab" share one code path.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from src.cluster.context import ClusterContext
from src.cluster.errors import API_ERRORS, DecodeError, classify
from src.common import naming

logger = logging.getLogger(__name__)

SINGLE_INSTANCE_KEY = "single_instance"


@dataclass
class ManifestDocument:
    index: int
    api_version: str
    kind: str
    name: Optional[str]
    single_instance: bool
    body: Dict[str, Any] = field(repr=False)

    @property
    def label(self) -> str:
        return f"{self.kind}/{self.name or '<unnamed>'}"


@dataclass(frozen=True)
class AppliedObject:
    kind: str
    name: Optional[str]
    namespace: Optional[str]


def _single_instance_flag(metadata: Dict[str, Any], index: int) -> bool:
    value = metadata.get(SINGLE_INSTANCE_KEY)
    if value is None:
        return True
    if not isinstance(value, bool):
        raise DecodeError(
            f"document {index}: metadata.{SINGLE_INSTANCE_KEY} must be a boolean, got {value!r}"
        )
    return value


def _to_document(raw: Any, index: int) -> ManifestDocument:
    if not isinstance(raw, dict):
        raise DecodeError(f"document {index}: expected a mapping, got {type(raw).__name__}")
    api_version = raw.get("apiVersion")
    kind = raw.get("kind")
    if not isinstance(api_version, str) or not api_version:
        raise DecodeError(f"document {index}: apiVersion is required")
    if not isinstance(kind, str) or not kind:
        raise DecodeError(f"document {index}: kind is required")

    metadata = raw.get("metadata")
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise DecodeError(f"document {index}: metadata must be a mapping")
    single_instance = _single_instance_flag(metadata, index)

    body = copy.deepcopy(raw)
    body_metadata = dict(metadata)
    # Not an ObjectMeta field; the API server has no use for it.
    body_metadata.pop(SINGLE_INSTANCE_KEY, None)
    body["metadata"] = body_metadata
    name = body_metadata.get("name")
    return ManifestDocument(
        index=index,
        api_version=api_version,
        kind=kind,
        name=name if isinstance(name, str) else None,
        single_instance=single_instance,
        body=body,
    )


def parse_manifest(manifest: Union[str, bytes]) -> List[ManifestDocument]:
    """Decode every document of ``manifest`` up front, in order.

    Empty documents are skipped; anything else that is not a Kubernetes object
    raises DecodeError before a single object is applied.
    """

    if isinstance(manifest, bytes):
        try:
            manifest = manifest.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"manifest is not valid UTF-8: {exc}") from exc
    try:
        raw_documents = list(yaml.safe_load_all(manifest))
    except yaml.YAMLError as exc:
        raise DecodeError(f"invalid manifest: {exc}") from exc

    documents: List[ManifestDocument] = []
    for index, raw in enumerate(raw_documents):
        if raw is None:
            continue
        documents.append(_to_document(raw, index))
    return documents


class ManifestDistributor:
    def __init__(self, context: ClusterContext) -> None:
        self.dynamic = context.dynamic
        self._resources: Dict[Tuple[str, str], Any] = {}

    def distribute(
        self,
        manifest: Union[str, bytes],
        lab_name: str,
        namespaces: Sequence[str],
        lab_existed: bool,
    ) -> List[AppliedObject]:
        documents = parse_manifest(manifest)
        lab_namespace = naming.lab_namespace(lab_name)

        # Resolve and scope-check every document that will be applied before creating any.
        singletons: List[Tuple[Any, ManifestDocument]] = []
        replicas: List[Tuple[Any, ManifestDocument]] = []
        for document in documents:
            if document.single_instance:
                if not lab_existed:
                    singletons.append((self._resolve(document), document))
                continue
            resource = self._resolve(document)
            if not resource.namespaced:
                raise DecodeError(
                    f"document {document.index}: {document.kind} is cluster-scoped and cannot be "
                    f"replicated per namespace; mark it {SINGLE_INSTANCE_KEY}: true"
                )
            replicas.append((resource, document))

        applied: List[AppliedObject] = []
        for resource, document in singletons:
            target = lab_namespace if resource.namespaced else None
            applied.append(self._create(resource, document, target))
        for resource, document in replicas:
            for namespace in namespaces:
                applied.append(self._create(resource, document, namespace))

        logger.info(
            "Applied %d object(s) for lab %s across %d new namespace(s)",
            len(applied),
            lab_name,
            len(namespaces),
        )
        return applied

    def _resolve(self, document: ManifestDocument) -> Any:
        key = (document.api_version, document.kind)
        if key not in self._resources:
            try:
                self._resources[key] = self.dynamic.resources.get(
                    api_version=document.api_version,
                    kind=document.kind,
                )
            except API_ERRORS as exc:
                raise classify(exc, f"resolving {document.api_version} {document.kind}") from exc
        return self._resources[key]

    def _create(self, resource: Any, document: ManifestDocument, namespace: Optional[str]) -> AppliedObject:
        body = copy.deepcopy(document.body)
        metadata = body["metadata"]
        if namespace is None:
            metadata.pop("namespace", None)
        else:
            metadata["namespace"] = namespace
        try:
            self.dynamic.create(resource, body=body, namespace=namespace)
        except API_ERRORS as exc:
            where = f" in {namespace}" if namespace else ""
            raise classify(exc, f"creating {document.label}{where}") from exc
        logger.info("Created %s%s", document.label, f" in {namespace}" if namespace else "")
        return AppliedObject(kind=document.kind, name=document.name, namespace=namespace)


__all__ = [
    "AppliedObject",
    "ManifestDistributor",
    "ManifestDocument",
    "SINGLE_INSTANCE_KEY",
    "parse_manifest",
]

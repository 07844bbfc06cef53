from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from kubernetes import client, config, dynamic

if TYPE_CHECKING:
    from src.common.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterContext:
    """Control-plane handles shared by every component of one process.

    Built once at start-up and passed by reference; never reassigned.
    """

    core_v1: Any
    rbac_v1: Any
    dynamic: Any

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ClusterContext":
        from src.common.settings import Settings

        settings = settings or Settings.from_env()
        api_client = _load_api_client(settings)
        return cls(
            core_v1=client.CoreV1Api(api_client=api_client),
            rbac_v1=client.RbacAuthorizationV1Api(api_client=api_client),
            dynamic=dynamic.DynamicClient(api_client),
        )


def _load_api_client(settings: Settings) -> client.ApiClient:
    # In-cluster service account first, kubeconfig second.
    cfg = client.Configuration()
    try:
        config.load_incluster_config(client_configuration=cfg)
        logger.info("Using in-cluster configuration")
    except config.ConfigException:
        config.load_kube_config(
            config_file=settings.kubeconfig_path,
            context=settings.kube_context,
            client_configuration=cfg,
        )
        logger.info("Using kubeconfig %s", settings.kubeconfig_path)
    return client.ApiClient(configuration=cfg)


__all__ = ["ClusterContext"]

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from src.cluster.errors import ValidationError

CREDENTIAL_MODES = ("secret", "token-request")


@dataclass(frozen=True)
class Settings:
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None
    credential_mode: str = "secret"
    credential_timeout: float = 60.0
    credential_poll_interval: float = 0.5
    credential_max_interval: float = 5.0
    credential_max_attempts: int = 60
    token_expiration_seconds: int = 31_536_000
    helm_bin: str = "helm"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.credential_mode not in CREDENTIAL_MODES:
            raise ValidationError(
                f"credential mode must be one of {', '.join(CREDENTIAL_MODES)}, got {self.credential_mode!r}"
            )
        if self.credential_timeout <= 0 or self.credential_max_attempts < 1:
            raise ValidationError("credential timeout and attempts must be positive")

    @property
    def kubeconfig_path(self) -> str:
        if self.kubeconfig:
            return self.kubeconfig
        return str(Path.home() / ".kube" / "config")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            kubeconfig=os.getenv("LAB_KUBECONFIG") or os.getenv("KUBECONFIG"),
            kube_context=os.getenv("LAB_KUBE_CONTEXT") or None,
            credential_mode=os.getenv("LAB_CREDENTIAL_MODE", "secret"),
            credential_timeout=_env_number("LAB_CREDENTIAL_TIMEOUT", 60.0, float),
            credential_poll_interval=_env_number("LAB_CREDENTIAL_POLL_INTERVAL", 0.5, float),
            credential_max_interval=_env_number("LAB_CREDENTIAL_MAX_INTERVAL", 5.0, float),
            credential_max_attempts=_env_number("LAB_CREDENTIAL_MAX_ATTEMPTS", 60, int),
            token_expiration_seconds=_env_number("LAB_TOKEN_EXPIRATION", 31_536_000, int),
            helm_bin=os.getenv("LAB_HELM_BIN", "helm"),
            host=os.getenv("LAB_HOST", "0.0.0.0"),
            port=_env_number("LAB_PORT", 3000, int),
            log_level=os.getenv("LAB_LOG_LEVEL", "INFO").upper(),
        )


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValidationError(f"Environment variable {name} must be a number, got {raw!r}") from exc


__all__ = ["CREDENTIAL_MODES", "Settings"]

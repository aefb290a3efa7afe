"""Registry client configuration loaded from ``config/config.toml``."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path("config") / "config.toml"


@dataclass(frozen=True)
class RegistryClientConfig:
    timeout_seconds: float = 30.0
    max_retries: int = 5
    backoff_seconds: float = 0.2
    max_backoff_seconds: float = 10.0
    insecure: bool = False
    allowlist_domains: tuple[str, ...] = ()
    username: str | None = None
    password: str | None = None
    token: str | None = None
    chunk_size: int = 0
    concurrency: int = 3

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> RegistryClientConfig:
        return cls(
            timeout_seconds=float(config.get("timeout_seconds", 30.0)),
            max_retries=int(config.get("max_retries", 5)),
            backoff_seconds=float(config.get("backoff_seconds", 0.2)),
            max_backoff_seconds=float(config.get("max_backoff_seconds", 10.0)),
            insecure=bool(config.get("insecure", False)),
            allowlist_domains=tuple(str(item) for item in config.get("allowlist_domains", []) if str(item).strip()),
            username=_string_or_none(config.get("username")),
            password=_string_or_none(config.get("password")),
            token=_string_or_none(config.get("token")),
            chunk_size=max(int(config.get("chunk_size", 0)), 0),
            concurrency=max(int(config.get("concurrency", 3)), 1),
        )


def load_oci_config(workspace_root: Path) -> dict[str, Any]:
    config_path = Path(workspace_root) / CONFIG_RELATIVE_PATH
    if not config_path.exists():
        return {}
    try:
        payload = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("ignoring unreadable config path=%s: %s", config_path, exc)
        return {}
    section = payload.get("oci")
    return section if isinstance(section, dict) else {}


def load_client_config(workspace_root: Path) -> RegistryClientConfig:
    return RegistryClientConfig.from_mapping(load_oci_config(workspace_root))


def _string_or_none(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None

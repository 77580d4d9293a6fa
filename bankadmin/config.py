"""Configuration management for the multi-bank administration service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple

import yaml

from .errors import NotFound
from .models import AccessPolicy

BACKEND_REST = "rest"
BACKEND_SQLITE = "sqlite"
_BACKENDS = {BACKEND_REST, BACKEND_SQLITE}

DEFAULT_PER_PAGE = 18
DEFAULT_SHARD_TIMEOUT = 10.0

CONFIG_ENV = "BANKADMIN_SHARDS_CONFIG"


def _resolve_relative(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute():
        return candidate.resolve(strict=False)
    if base_path is not None:
        return (base_path / candidate).resolve(strict=False)
    return candidate.resolve(strict=False)


@dataclass(frozen=True)
class ShardConfig:
    """Connection details for one bank shard."""

    key: str
    name: str
    backend: str = BACKEND_REST
    endpoint: Optional[str] = None
    service_role_key: Optional[str] = field(default=None, repr=False)
    path: Optional[Path] = None
    timeout: float = DEFAULT_SHARD_TIMEOUT

    @staticmethod
    def from_dict(
        data: Mapping[str, object],
        base_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "ShardConfig":
        """Create a :class:`ShardConfig` from raw dictionary data."""
        required_fields = {"key", "name"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required shard configuration fields: {', '.join(sorted(missing))}")

        key = str(data["key"]).strip()
        if not key:
            raise ValueError("Shard key must not be empty")

        backend = str(data.get("backend", BACKEND_REST)).strip().lower()
        if backend not in _BACKENDS:
            raise ValueError(f"Shard '{key}' uses unsupported backend '{backend}'")

        env = os.environ if environ is None else environ
        credential: Optional[str] = None
        if data.get("service_role_key") is not None:
            credential = str(data["service_role_key"])
        elif data.get("service_role_key_env"):
            variable = str(data["service_role_key_env"])
            credential = env.get(variable)
            if not credential:
                raise ValueError(f"Environment variable {variable} for shard '{key}' is not set")

        endpoint = str(data["endpoint"]).rstrip("/") if data.get("endpoint") else None
        path = _resolve_relative(data["path"], base_path) if data.get("path") else None

        if backend == BACKEND_REST and (endpoint is None or credential is None):
            raise ValueError(f"Shard '{key}' requires an endpoint and a service role key")
        if backend == BACKEND_SQLITE and path is None:
            raise ValueError(f"Shard '{key}' requires a database path")

        return ShardConfig(
            key=key,
            name=str(data["name"]),
            backend=backend,
            endpoint=endpoint,
            service_role_key=credential,
            path=path,
            timeout=float(data.get("timeout", DEFAULT_SHARD_TIMEOUT)),
        )


class ShardRegistry:
    """Read-only, ordered registry of configured shards."""

    def __init__(self, shards: Iterable[ShardConfig]) -> None:
        self._shards: Dict[str, ShardConfig] = {}
        for shard in shards:
            if shard.key in self._shards:
                raise ValueError(f"Duplicate shard key '{shard.key}'")
            self._shards[shard.key] = shard
        if len(self._shards) == 0:
            raise ValueError("Shard registry must contain at least one shard configuration")

    def get(self, key: str) -> ShardConfig:
        try:
            return self._shards[key]
        except KeyError as exc:
            raise NotFound(f"Unknown shard '{key}'") from exc

    def list(self) -> Tuple[ShardConfig, ...]:
        return tuple(self._shards.values())

    def keys(self) -> Tuple[str, ...]:
        return tuple(self._shards)

    def __contains__(self, key: object) -> bool:
        return key in self._shards

    def __len__(self) -> int:
        return len(self._shards)


@dataclass(frozen=True)
class AdminSettings:
    """Behavioural switches for the aggregation layer."""

    access_policy: AccessPolicy = AccessPolicy.FAIL_OPEN
    parallel_fanout: bool = True
    fanout_timeout: Optional[float] = None
    default_per_page: int = DEFAULT_PER_PAGE

    @staticmethod
    def from_dict(data: Mapping[str, object] | None) -> "AdminSettings":
        if not data:
            return AdminSettings()

        policy_raw = str(data.get("access_policy", AccessPolicy.FAIL_OPEN.value)).strip().lower()
        try:
            policy = AccessPolicy(policy_raw)
        except ValueError as exc:
            raise ValueError(f"Unknown access policy '{policy_raw}'") from exc

        timeout_raw = data.get("fanout_timeout")
        timeout = float(timeout_raw) if timeout_raw is not None else None
        if timeout is not None and timeout <= 0:
            raise ValueError("fanout_timeout must be positive")

        per_page = int(data.get("default_per_page", DEFAULT_PER_PAGE))
        if per_page < 1:
            raise ValueError("default_per_page must be at least 1")

        return AdminSettings(
            access_policy=policy,
            parallel_fanout=bool(data.get("parallel_fanout", True)),
            fanout_timeout=timeout,
            default_per_page=per_page,
        )


@dataclass(frozen=True)
class AdminConfig:
    """Everything loaded from the configuration file at process start."""

    registry: ShardRegistry
    settings: AdminSettings


def load_config(config_path: Path, environ: Mapping[str, str] | None = None) -> AdminConfig:
    """Load shard definitions and settings from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    shards_raw = raw.get("shards")
    if not shards_raw:
        raise ValueError("Configuration file must define at least one shard under the 'shards' key")

    config_dir = config_path.parent
    shards = [ShardConfig.from_dict(item, base_path=config_dir, environ=environ) for item in shards_raw]
    return AdminConfig(
        registry=ShardRegistry(shards),
        settings=AdminSettings.from_dict(raw.get("settings")),
    )


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the shard configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "shards.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "AdminConfig",
    "AdminSettings",
    "BACKEND_REST",
    "BACKEND_SQLITE",
    "CONFIG_ENV",
    "DEFAULT_PER_PAGE",
    "ShardConfig",
    "ShardRegistry",
    "load_config",
    "resolve_config_path",
]

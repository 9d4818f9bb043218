"""Configuration loader: ``config.yaml`` plus optional ``.env`` overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml
from dotenv import load_dotenv

from core.health import FALLBACK_PROVIDER, normalize_url

DB_PATH_ENV = "CHAINSENTRY_DB_PATH"

T = TypeVar("T")


def _mapping(data: Any, section: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{section} section must be a mapping")
    return data


def _build(cls: Type[T], data: Any, section: str) -> T:
    unknown = sorted(str(key) for key in set(_mapping(data, section)) - {item.name for item in fields(cls)})
    if unknown:
        raise ValueError(f"Unknown {section} option(s): {', '.join(unknown)}")
    return cls(**data)


@dataclass
class ConnectionConfig:
    """Endpoint selection, timeouts and reconnect policy."""

    default_provider: str = FALLBACK_PROVIDER
    providers: List[str] = field(default_factory=list)
    secure_only: bool = True
    auto_reconnect: bool = True
    request_timeout: float = 15.0
    max_retries: int = 3
    health_interval: float = 10.0
    metadata_interval: float = 30.0
    reconnect_base: float = 1.0
    reconnect_cap: float = 30.0
    max_reconnect_attempts: int = 5

    def __post_init__(self) -> None:
        normalize_url(self.default_provider, secure=False)
        for url in self.providers:
            normalize_url(url, secure=False)
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.health_interval <= 0 or self.metadata_interval <= 0:
            raise ValueError("probe intervals must be positive")
        if self.reconnect_base <= 0 or self.reconnect_cap < self.reconnect_base:
            raise ValueError("reconnect_cap must be >= reconnect_base > 0")
        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, object]]) -> "ConnectionConfig":
        if not data:
            return cls()
        payload = dict(_mapping(data, "connection"))
        payload["providers"] = list(payload.get("providers") or [])
        return _build(cls, payload, "connection")


@dataclass
class EmailConfig:
    """E-mail relay configuration with environment indirection."""

    enabled: bool = False
    webhook_env: Optional[str] = None
    secret_env: Optional[str] = None

    @property
    def webhook(self) -> Optional[str]:
        return os.getenv(self.webhook_env) if self.webhook_env else None

    @property
    def secret(self) -> Optional[str]:
        return os.getenv(self.secret_env) if self.secret_env else None


@dataclass
class AlertsConfig:
    """Alert feed and suspicious-address settings."""

    suspicious_addresses: List[str] = field(default_factory=list)
    email: EmailConfig = field(default_factory=EmailConfig)
    feed_interval: float = 12.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, object]]) -> "AlertsConfig":
        if not data:
            return cls()
        data = _mapping(data, "alerts")
        unknown = sorted(str(key) for key in set(data) - {item.name for item in fields(cls)})
        if unknown:
            raise ValueError(f"Unknown alerts option(s): {', '.join(unknown)}")
        email = _build(EmailConfig, data.get("email") or {}, "alerts.email")
        return cls(
            suspicious_addresses=[str(addr) for addr in data.get("suspicious_addresses") or []],
            email=email,
            feed_interval=float(data.get("feed_interval", 12.0)),
        )


@dataclass
class StorageConfig:
    """SQLite location; the environment variable wins over the file."""

    db_path: Optional[str] = None

    @property
    def resolved_db_path(self) -> Optional[str]:
        return os.environ.get(DB_PATH_ENV) or self.db_path

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, object]]) -> "StorageConfig":
        if not data:
            return cls()
        return _build(cls, data, "storage")


@dataclass
class AppConfig:
    """Top level configuration model."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    debug: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, object]]) -> "AppConfig":
        if not data:
            return cls()
        data = _mapping(data, "configuration root")
        unknown = sorted(str(key) for key in set(data) - {item.name for item in fields(cls)})
        if unknown:
            raise ValueError(f"Unknown top-level option(s): {', '.join(unknown)}")
        return cls(
            connection=ConnectionConfig.from_dict(data.get("connection")),
            alerts=AlertsConfig.from_dict(data.get("alerts")),
            storage=StorageConfig.from_dict(data.get("storage")),
            debug=bool(data.get("debug", False)),
        )


def load_config(
    config_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
) -> AppConfig:
    """Load configuration from YAML and environment variables.

    A missing config file yields the defaults so a first run works without
    any setup.
    """

    base_path = Path(__file__).resolve().parents[1]
    if config_path is None:
        config_path = base_path / "config.yaml"
    if env_path is None:
        default_env = base_path / ".env"
        if default_env.exists():
            env_path = default_env

    if env_path is not None:
        load_dotenv(dotenv_path=env_path, override=False)

    if not Path(config_path).exists():
        return AppConfig()

    with open(config_path, "r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}

    return AppConfig.from_dict(data)


__all__ = [
    "DB_PATH_ENV",
    "ConnectionConfig",
    "EmailConfig",
    "AlertsConfig",
    "StorageConfig",
    "AppConfig",
    "load_config",
]

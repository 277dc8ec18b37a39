from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

GatewayKind = Literal["http", "cli"]


class ConfigError(ValueError):
    """Raised when configuration values are inconsistent."""


@dataclass(slots=True)
class RouterConfig:
    max_concurrent: int = 4
    max_retries: int = 3
    spawn_delay_ms: int = 1000
    retry_delay_seconds: float = 60.0
    poll_interval_seconds: float = 5.0
    claim_lease_seconds: float = 120.0


@dataclass(slots=True)
class RegistryConfig:
    stale_timeout_seconds: float = 300.0
    offline_timeout_seconds: float = 600.0
    expiry_seconds: float = 3600.0


@dataclass(slots=True)
class GatewayConfig:
    kind: GatewayKind = "http"
    url: str = "http://127.0.0.1:18789"
    token: str = ""
    timeout_seconds: float = 15.0
    run_timeout_seconds: int = 600
    model: str = "anthropic/claude-sonnet-4-5"
    binary: str = "openclaw"


@dataclass(slots=True)
class WorkersConfig:
    identities: list[str] = field(
        default_factory=lambda: ["dev-1", "dev-2", "architect", "qa"]
    )
    routes: dict[str, str] = field(
        default_factory=lambda: {
            "backend": "dev-1",
            "api": "dev-1",
            "infra": "dev-1",
            "frontend": "dev-2",
            "ui": "dev-2",
            "react": "dev-2",
            "architecture": "architect",
            "design": "architect",
            "qa": "qa",
            "test": "qa",
        }
    )


@dataclass(slots=True)
class StateConfig:
    directory: str = ".dispatcher/state"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class DispatcherConfig:
    router: RouterConfig = field(default_factory=RouterConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> DispatcherConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> DispatcherConfig:
        workers = dict(data.get("workers", {}))
        return cls(
            router=RouterConfig(**data.get("router", {})),
            registry=RegistryConfig(**data.get("registry", {})),
            gateway=GatewayConfig(**data.get("gateway", {})),
            workers=WorkersConfig(
                identities=list(workers.get("identities", WorkersConfig().identities)),
                routes=dict(workers.get("routes", WorkersConfig().routes)),
            ),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "router": {
                "max_concurrent": self.router.max_concurrent,
                "max_retries": self.router.max_retries,
                "spawn_delay_ms": self.router.spawn_delay_ms,
                "retry_delay_seconds": self.router.retry_delay_seconds,
                "poll_interval_seconds": self.router.poll_interval_seconds,
                "claim_lease_seconds": self.router.claim_lease_seconds,
            },
            "registry": {
                "stale_timeout_seconds": self.registry.stale_timeout_seconds,
                "offline_timeout_seconds": self.registry.offline_timeout_seconds,
                "expiry_seconds": self.registry.expiry_seconds,
            },
            "gateway": {
                "kind": self.gateway.kind,
                "url": self.gateway.url,
                "token": self.gateway.token,
                "timeout_seconds": self.gateway.timeout_seconds,
                "run_timeout_seconds": self.gateway.run_timeout_seconds,
                "model": self.gateway.model,
                "binary": self.gateway.binary,
            },
            "workers": {
                "identities": list(self.workers.identities),
                "routes": dict(self.workers.routes),
            },
            "state": {
                "directory": self.state.directory,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def validate(self) -> None:
        if self.router.max_concurrent < 1:
            raise ConfigError("router.max_concurrent must be at least 1.")
        if self.router.max_retries < 1:
            raise ConfigError("router.max_retries must be at least 1.")
        if self.router.spawn_delay_ms < 0:
            raise ConfigError("router.spawn_delay_ms must not be negative.")
        if self.router.claim_lease_seconds <= 0:
            raise ConfigError("router.claim_lease_seconds must be positive.")
        registry = self.registry
        if not (
            0
            < registry.stale_timeout_seconds
            < registry.offline_timeout_seconds
            < registry.expiry_seconds
        ):
            raise ConfigError(
                "registry timeouts must satisfy 0 < stale < offline < expiry "
                f"(got {registry.stale_timeout_seconds}, "
                f"{registry.offline_timeout_seconds}, {registry.expiry_seconds})."
            )
        if self.gateway.kind not in {"http", "cli"}:
            raise ConfigError(f"Unsupported gateway kind: {self.gateway.kind}")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: DispatcherConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["router", "registry", "gateway", "workers", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        nested: dict[str, dict] = {}
        for key, value in data[section].items():
            if isinstance(value, dict):
                nested[key] = value
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, table in nested.items():
            lines.append(f"[{section}.{key}]")
            for item_key, item_value in table.items():
                lines.append(f"{json.dumps(str(item_key))} = {_toml_value(item_value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def apply_env_overrides(config: DispatcherConfig) -> DispatcherConfig:
    gateway_url = os.environ.get("GATEWAY_URL", "").strip()
    if gateway_url:
        config.gateway.url = gateway_url
    gateway_token = os.environ.get("GATEWAY_TOKEN", "").strip()
    if gateway_token:
        config.gateway.token = gateway_token
    return config


def load_config(path: Path) -> DispatcherConfig:
    if not path.exists():
        config = DispatcherConfig.default()
    else:
        config = DispatcherConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    config = apply_env_overrides(config)
    config.validate()
    return config


def save_config(path: Path, config: DispatcherConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")

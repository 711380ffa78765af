from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
import logging
import os

import yaml


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be applied."""


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ControllerConfig:
    namespace: str = os.getenv("NBC_NAMESPACE", "storage-system")
    controller_id: str = os.getenv("NODE_NAME", "")
    workers: int = int(os.getenv("NBC_WORKERS", "5"))
    max_retries: int = int(os.getenv("NBC_MAX_RETRIES", "3"))
    backup_status_poll_interval_seconds: float = float(os.getenv("NBC_BACKUP_STATUS_POLL_INTERVAL_SECONDS", "2"))
    backup_target_name: str = os.getenv("NBC_BACKUP_TARGET_NAME", "default")
    crd_group: str = os.getenv("NBC_CRD_GROUP", "storage.nerdy.dev")
    crd_version: str = os.getenv("NBC_CRD_VERSION", "v1beta1")
    kubeconfig_path: str | None = os.getenv("NBC_KUBECONFIG") or None
    context: str | None = os.getenv("NBC_CONTEXT") or None
    in_cluster: bool = _env_flag("NBC_IN_CLUSTER")
    log_level: str = os.getenv("NBC_LOG_LEVEL", "INFO")
    target_client_factory: str = os.getenv("NBC_TARGET_CLIENT_FACTORY", "")
    engine_client_factory: str = os.getenv("NBC_ENGINE_CLIENT_FACTORY", "")


def validate_config(config: ControllerConfig) -> list[str]:
    errors: list[str] = []
    if not config.namespace.strip():
        errors.append("namespace is required")
    if not config.controller_id.strip():
        errors.append("controller id is required (set NODE_NAME or --controller-id)")
    if config.workers <= 0:
        errors.append("workers must be positive")
    if config.max_retries < 0:
        errors.append("max_retries must be >= 0")
    if config.backup_status_poll_interval_seconds <= 0:
        errors.append("backup_status_poll_interval_seconds must be positive")
    if config.log_level.strip().upper() not in logging.getLevelNamesMapping():
        errors.append(f"log_level {config.log_level!r} is not a logging level name")
    for name in ("target_client_factory", "engine_client_factory"):
        if ":" not in getattr(config, name):
            errors.append(f"{name} must be a 'module:callable' reference")
    return errors


def load_config_overrides(config: ControllerConfig, path: Path) -> ControllerConfig:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Unable to read controller config from '{path}': {error}") from error

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Controller config '{path}' must be a mapping")

    known = {field.name for field in fields(ControllerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Controller config '{path}' has unknown keys: {', '.join(unknown)}")

    overrides: dict[str, Any] = {}
    for key, value in data.items():
        current = getattr(config, key)
        try:
            if isinstance(current, bool):
                if isinstance(value, str):
                    overrides[key] = value.strip().lower() in {"1", "true", "yes", "on"}
                else:
                    overrides[key] = bool(value)
            elif isinstance(current, int):
                overrides[key] = int(value)
            elif isinstance(current, float):
                overrides[key] = float(value)
            else:
                overrides[key] = None if value is None else str(value)
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Controller config key '{key}' has an invalid value: {value!r}") from error
    return replace(config, **overrides)

"""YAML configuration loading and typed engine settings."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .tools.patch import ContentPolicy
from .tools.snapshot import DEFAULT_EXCLUDES

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_NAME",
    "ApplySettings",
    "ClassifierSettings",
    "ConfigError",
    "EngineSettings",
    "ProducerSettings",
    "ProgressSettings",
    "RetrySettings",
    "WorkspaceSettings",
    "load_config",
    "load_settings",
]

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "workspace": {
        "root": ".",
        "include": ["**/*"],
        "exclude": list(DEFAULT_EXCLUDES),
        "max_file_bytes": 1_000_000,
    },
    "producer": {
        "url": "",
        "timeout": 120.0,
        "api_key_env": "CSE_PRODUCER_API_KEY",
    },
    "retry": {
        "max_attempts": 3,
        "base_delay": 1.0,
    },
    "apply": {
        "content_policy": ContentPolicy.STRICT.value,
        "require_snapshot": False,
        "max_workers": 1,
        "allow_overwrite": False,
        "history_size": 10,
    },
    "progress": {
        "capacity": 100,
    },
    "classifier": {
        "remote_service_markers": ["model", "llm", "producer"],
        "storage_markers": ["storage", "database", "collection", "qdrant"],
    },
}


class ConfigError(ValueError):
    """Raised when configuration cannot be read or holds invalid values."""


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[Path] = None, *, required: bool = False) -> Dict[str, Any]:
    """Load YAML configuration merged over `DEFAULT_CONFIG`.

    A missing file yields the defaults unless ``required`` is set.
    """
    if config_path is None or not config_path.exists():
        if required:
            raise ConfigError(f"Config file not found: {config_path}")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return _deep_merge(DEFAULT_CONFIG, data)


@dataclass(slots=True)
class WorkspaceSettings:
    root: Path = Path(".")
    include: list[str] = field(default_factory=lambda: ["**/*"])
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    max_file_bytes: int | None = 1_000_000


@dataclass(slots=True)
class ProducerSettings:
    url: str = ""
    timeout: float = 120.0
    api_key_env: str = "CSE_PRODUCER_API_KEY"


@dataclass(slots=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 1.0


@dataclass(slots=True)
class ApplySettings:
    content_policy: ContentPolicy = ContentPolicy.STRICT
    require_snapshot: bool = False
    max_workers: int = 1
    allow_overwrite: bool = False
    history_size: int = 10


@dataclass(slots=True)
class ProgressSettings:
    capacity: int = 100


@dataclass(slots=True)
class ClassifierSettings:
    remote_service_markers: list[str] = field(default_factory=lambda: ["model", "llm", "producer"])
    storage_markers: list[str] = field(default_factory=lambda: ["storage", "database", "collection", "qdrant"])


@dataclass(slots=True)
class EngineSettings:
    """Typed view over the merged configuration mapping."""

    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    producer: ProducerSettings = field(default_factory=ProducerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    apply: ApplySettings = field(default_factory=ApplySettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        base_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "EngineSettings":
        merged = _deep_merge(DEFAULT_CONFIG, config)
        env_mapping = os.environ if env is None else env

        workspace_cfg = merged["workspace"]
        root = Path(str(workspace_cfg.get("root") or "."))
        if not root.is_absolute() and base_dir is not None:
            root = (base_dir / root).resolve()
        max_bytes = workspace_cfg.get("max_file_bytes")
        workspace = WorkspaceSettings(
            root=root,
            include=_string_list(workspace_cfg.get("include"), "workspace.include"),
            exclude=_string_list(workspace_cfg.get("exclude"), "workspace.exclude"),
            max_file_bytes=None if max_bytes in (None, 0) else _positive_int(max_bytes, "workspace.max_file_bytes"),
        )

        producer_cfg = merged["producer"]
        producer = ProducerSettings(
            url=str(producer_cfg.get("url") or ""),
            timeout=_positive_float(producer_cfg.get("timeout"), "producer.timeout"),
            api_key_env=str(producer_cfg.get("api_key_env") or "CSE_PRODUCER_API_KEY"),
        )

        retry_cfg = merged["retry"]
        retry = RetrySettings(
            max_attempts=_positive_int(retry_cfg.get("max_attempts"), "retry.max_attempts"),
            base_delay=_positive_float(retry_cfg.get("base_delay"), "retry.base_delay"),
        )

        apply_cfg = merged["apply"]
        try:
            policy = ContentPolicy(str(apply_cfg.get("content_policy") or "strict").strip().lower())
        except ValueError:
            raise ConfigError(
                f"apply.content_policy must be one of: {', '.join(item.value for item in ContentPolicy)}"
            ) from None
        apply = ApplySettings(
            content_policy=policy,
            require_snapshot=bool(apply_cfg.get("require_snapshot")),
            max_workers=_positive_int(apply_cfg.get("max_workers"), "apply.max_workers"),
            allow_overwrite=bool(apply_cfg.get("allow_overwrite")),
            history_size=_positive_int(apply_cfg.get("history_size"), "apply.history_size"),
        )

        progress = ProgressSettings(
            capacity=_positive_int(merged["progress"].get("capacity"), "progress.capacity"),
        )

        classifier_cfg = merged["classifier"]
        classifier = ClassifierSettings(
            remote_service_markers=_string_list(
                classifier_cfg.get("remote_service_markers"), "classifier.remote_service_markers"
            ),
            storage_markers=_string_list(classifier_cfg.get("storage_markers"), "classifier.storage_markers"),
        )

        settings = cls(
            workspace=workspace,
            producer=producer,
            retry=retry,
            apply=apply,
            progress=progress,
            classifier=classifier,
        )
        settings._apply_env(env_mapping)
        return settings

    def _apply_env(self, env: Mapping[str, str]) -> None:
        """Environment variables win over file values; invalid values are ignored."""
        attempts = _env_number(env, "CSE_MAX_ATTEMPTS", int)
        if attempts is not None:
            self.retry.max_attempts = int(attempts)
        base_delay = _env_number(env, "CSE_BASE_DELAY", float)
        if base_delay is not None:
            self.retry.base_delay = float(base_delay)
        timeout = _env_number(env, "CSE_PRODUCER_TIMEOUT", float)
        if timeout is not None:
            self.producer.timeout = float(timeout)
        url = env.get("CSE_PRODUCER_URL")
        if url and url.strip():
            self.producer.url = url.strip()


def load_settings(config_path: Optional[Path] = None, *, required: bool = False) -> EngineSettings:
    """Load configuration from ``config_path`` and build `EngineSettings`."""
    config = load_config(config_path, required=required)
    base_dir = config_path.parent.resolve() if config_path is not None else None
    return EngineSettings.from_config(config, base_dir=base_dir)


def _env_number(env: Mapping[str, str], name: str, kind: type) -> int | float | None:
    raw = env.get(name)
    if raw is None:
        return None
    try:
        parsed = kind(str(raw).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a positive integer.")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a positive integer.") from None
    if parsed < 1:
        raise ConfigError(f"{name} must be a positive integer.")
    return parsed


def _positive_float(value: Any, name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a positive number.") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be a positive number.")
    return parsed


def _string_list(value: Any, name: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{name} must be a list of strings.")
    return list(value)

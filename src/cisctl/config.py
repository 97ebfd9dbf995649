"""Configuration loader for cisctl.

Values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/cisctl/config.yml`` (or an override path).
3. Legacy environment names understood by the shell rule scripts
   (``LOG_FILE``, ``BACKUP_DIR``, ``DRY_RUN``, ``LOG_LEVEL``).
4. Environment variables prefixed with ``CISCTL_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CISCTL_POLLING__INTERVAL=5
    export CISCTL_REMOTE__REGION=eu-west-1

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cisctl configuration. Install with "
        "`pip install cisctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .fleet.models import (
    DEFAULT_ARTIFACT_BUCKET,
    DEFAULT_ARTIFACT_PREFIX,
    DEFAULT_TIMEOUT_SECONDS,
)
from .logging import LOG_LEVELS, normalize_level
from .providers.ssm import DEFAULT_DOCUMENT_NAME

ENV_PREFIX = "CISCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
LEGACY_ENV_KEYS: Mapping[str, str] = {
    "LOG_FILE": "log_file",
    "BACKUP_DIR": "backup_root",
    "DRY_RUN": "dry_run",
    "LOG_LEVEL": "log_level",
}
FAILURE_POLICIES = ("continue", "abort")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RemoteConfig:
    """How the remote execution service is reached."""

    document_name: str = DEFAULT_DOCUMENT_NAME
    aws_bin: str = "aws"
    profile: str | None = None
    region: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "document_name": self.document_name,
            "aws_bin": self.aws_bin,
            "profile": self.profile,
            "region": self.region,
        }


@dataclass(frozen=True)
class ArtifactsConfig:
    """Where targets fetch the rule scripts from."""

    bucket: str = DEFAULT_ARTIFACT_BUCKET
    prefix: str = DEFAULT_ARTIFACT_PREFIX

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bucket": self.bucket, "prefix": self.prefix}


@dataclass(frozen=True)
class PollingConfig:
    """Completion wait defaults."""

    interval: float = 10.0
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    output_tail_lines: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "timeout": self.timeout,
            "output_tail_lines": self.output_tail_lines,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cisctl."""

    config_file: Path
    logs_dir: Path
    log_file: Path
    log_level: str
    backup_root: Path
    dry_run: bool
    require_root: bool
    controls_file: Path | None
    failure_policy: str
    remote: RemoteConfig
    artifacts: ArtifactsConfig
    polling: PollingConfig

    @property
    def fail_fast(self) -> bool:
        """Return ``True`` when the first failed control aborts the run."""
        return self.failure_policy == "abort"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "log_file": str(self.log_file),
            "log_level": self.log_level,
            "backup_root": str(self.backup_root),
            "dry_run": self.dry_run,
            "require_root": self.require_root,
            "controls_file": str(self.controls_file) if self.controls_file else None,
            "failure_policy": self.failure_policy,
            "remote": self.remote.to_dict(),
            "artifacts": self.artifacts.to_dict(),
            "polling": self.polling.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/cisctl/config.yml",
    "logs_dir": "/var/log/cisctl",
    "log_file": "/var/log/cis-remediation.log",
    "log_level": "INFO",
    "backup_root": "/var/backups/cis",
    "dry_run": False,
    "require_root": True,
    "controls_file": None,
    "failure_policy": "continue",
    "remote": {
        "document_name": DEFAULT_DOCUMENT_NAME,
        "aws_bin": "aws",
        "profile": None,
        "region": None,
    },
    "artifacts": {
        "bucket": DEFAULT_ARTIFACT_BUCKET,
        "prefix": DEFAULT_ARTIFACT_PREFIX,
    },
    "polling": {
        "interval": 10.0,
        "timeout": DEFAULT_TIMEOUT_SECONDS,
        "output_tail_lines": 10,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: Mapping[str, set[str]] = {
    "remote": {"document_name", "aws_bin", "profile", "region"},
    "artifacts": {"bucket", "prefix"},
    "polling": {"interval", "timeout", "output_tail_lines"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)
    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)
    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)
    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)
    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)
    if overrides:
        _deep_merge(merged, {key: value for key, value in overrides.items() if value is not None})
    merged["config_file"] = str(config_path)
    _validate_structure(merged)
    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    level = raw.get("log_level")
    if normalize_level(str(level)) not in LOG_LEVELS:
        allowed_levels = ", ".join(LOG_LEVELS)
        raise ConfigError(f"Unsupported log_level '{level}'. Allowed: {allowed_levels}.")

    policy = str(raw.get("failure_policy"))
    if policy not in FAILURE_POLICIES:
        allowed_policies = ", ".join(FAILURE_POLICIES)
        raise ConfigError(f"Unsupported failure_policy '{policy}'. Allowed: {allowed_policies}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    controls_value = raw.get("controls_file")
    controls_file: Path | None = None
    if isinstance(controls_value, (str, Path)):
        if str(controls_value).strip():
            controls_file = _to_path(controls_value)
    elif controls_value is not None:
        raise ConfigError("controls_file must be a string, Path, or null.")

    remote_mapping = _as_dict(raw.get("remote"), "remote")
    remote = RemoteConfig(
        document_name=str(remote_mapping.get("document_name") or DEFAULT_DOCUMENT_NAME),
        aws_bin=str(remote_mapping.get("aws_bin") or "aws"),
        profile=_optional_str(remote_mapping.get("profile")),
        region=_optional_str(remote_mapping.get("region")),
    )

    artifacts_mapping = _as_dict(raw.get("artifacts"), "artifacts")
    bucket = str(artifacts_mapping.get("bucket") or "").strip()
    if not bucket:
        raise ConfigError("artifacts.bucket must be a non-empty string.")
    artifacts = ArtifactsConfig(
        bucket=bucket,
        prefix=str(artifacts_mapping.get("prefix") or "").strip("/"),
    )

    polling_mapping = _as_dict(raw.get("polling"), "polling")
    timeout = _expect_int(
        polling_mapping.get("timeout"),
        "polling.timeout",
        default=DEFAULT_TIMEOUT_SECONDS,
    )
    if timeout <= 0:
        raise ConfigError(f"polling.timeout must be greater than zero. Got {timeout}.")
    tail_lines = _expect_int(
        polling_mapping.get("output_tail_lines"),
        "polling.output_tail_lines",
        default=10,
    )
    if tail_lines < 0:
        raise ConfigError("polling.output_tail_lines must be non-negative.")
    polling = PollingConfig(
        interval=_expect_positive_float(
            polling_mapping.get("interval"), "polling.interval", default=10.0
        ),
        timeout=timeout,
        output_tail_lines=tail_lines,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        log_file=_to_path(raw.get("log_file")),
        log_level=normalize_level(str(raw.get("log_level", "INFO"))),
        backup_root=_to_path(raw.get("backup_root")),
        dry_run=_expect_bool(raw.get("dry_run"), "dry_run", default=False),
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        controls_file=controls_file,
        failure_policy=str(raw.get("failure_policy", "continue")),
        remote=remote,
        artifacts=artifacts,
        polling=polling,
    )


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for env_key, config_key in LEGACY_ENV_KEYS.items():
        value = env.get(env_key)
        if value is None or not value.strip():
            continue
        overrides[config_key] = _coerce_value(value)
    return overrides


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ArtifactsConfig",
    "ConfigError",
    "PollingConfig",
    "RemoteConfig",
    "load_config",
]

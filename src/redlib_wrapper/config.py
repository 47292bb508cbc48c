"""Configuration loading and validation for the redlib wrapper."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import re
import tempfile
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "redlib-wrapper"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
DEFAULT_VERSION_PATTERN = r"version\s+v?([0-9][\w.+-]*)"


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class UpdateConfig(BaseModel):
    """Staging, activation and sanity-probe settings for updates."""

    artifact_name: str = "redlib"
    temp_root: str = "~/.local/state/redlib-wrapper/tmp"
    current_root: str = "~/.local/share/redlib-wrapper/current"
    sanity_mode: Literal["auto", "execute", "content"] = "auto"
    probe_args: list[str] = Field(default_factory=lambda: ["--version"])
    probe_timeout_seconds: float = Field(default=10.0, gt=0, le=600)
    version_pattern: str = DEFAULT_VERSION_PATTERN
    fetch_timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    chunk_size: int = Field(default=64 * 1024, ge=1024, le=16 * 1024 * 1024)

    @field_validator("artifact_name", mode="before")
    @classmethod
    def _validate_artifact_name(cls, value: Any) -> str:
        normalized = _require_string(value)
        if "/" in normalized or "\\" in normalized or normalized in {".", ".."}:
            raise ValueError("artifact_name must be a plain file name.")
        return normalized

    @field_validator("temp_root", "current_root", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("probe_args", mode="before")
    @classmethod
    def _validate_probe_args(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError("probe_args must be a list of strings.")
        return list(value)

    @field_validator("version_pattern", mode="before")
    @classmethod
    def _validate_version_pattern(cls, value: Any) -> str:
        normalized = _require_string(value)
        try:
            compiled = re.compile(normalized)
        except re.error as exc:
            raise ValueError(f"version_pattern is not a valid regex: {exc}") from exc
        if compiled.groups < 1:
            raise ValueError("version_pattern must capture the version in a group.")
        return normalized

    @property
    def temp_root_path(self) -> Path:
        return Path(self.temp_root).expanduser()

    @property
    def current_root_path(self) -> Path:
        return Path(self.current_root).expanduser()

    @property
    def current_path(self) -> Path:
        """The live location of the managed binary."""
        return self.current_root_path / self.artifact_name


class RunConfig(BaseModel):
    """Process supervision settings."""

    working_dir: str = Field(default_factory=tempfile.gettempdir)
    logs_dir: str = ""
    stderr_sample_lines: int = Field(default=20, ge=1, le=10_000)
    terminate_grace_seconds: float = Field(default=5.0, ge=0, le=300)

    @field_validator("working_dir", mode="before")
    @classmethod
    def _validate_working_dir(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("logs_dir", mode="before")
    @classmethod
    def _normalize_logs_dir(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("logs_dir must be a string.")
        return value.strip()


class BusConfig(BaseModel):
    """Event bus buffering and backpressure settings."""

    buffer_size: int = Field(default=64, ge=1, le=1_000_000)
    publish_timeout_seconds: float = Field(default=30.0, gt=0, le=3600)

    @property
    def publish_timeout(self) -> float:
        return self.publish_timeout_seconds


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/redlib-wrapper/wrapper.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    update: UpdateConfig = UpdateConfig()
    run: RunConfig = RunConfig()
    bus: BusConfig = BusConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and the
    ``--config`` command-line flag.
    """
    target_path = config_path or CONFIG_PATH
    if config_path is None:
        ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    return _validate_config(merged)

"""Artifact cache configuration from config.yaml and environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.errors.exceptions import ConfigurationError
from core.security.url_validation import DEFAULT_ARTIFACT_EXTENSION

# Default config path: config.yaml in the working directory
DEFAULT_CONFIG_PATH = Path("config.yaml")

WRITE_MODES = ("auto", "stream", "serialized")

_TRUTHY = ("1", "true", "yes", "on")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


@dataclass
class CacheConfig:
    """Artifact cache behavior configuration.

    Load with CacheConfig.load_config() (YAML + environment) or
    CacheConfig.from_env() (environment only).
    """

    # Storage
    cache_dir: Path = Path(".artifact_cache")
    write_mode: str = "auto"

    # Downloads
    parallel_downloads: int = 3
    allow_offline: bool = False
    chunk_size: int = 1024 * 1024  # 1MiB
    request_timeout_seconds: float = 30.0
    progress_interval_seconds: float = 0.1
    tee_buffer_chunks: int = 64

    # Validation
    allowed_extension: str = DEFAULT_ARTIFACT_EXTENSION

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir)
        self.validate()

    def validate(self) -> None:
        """Check field values.

        Raises:
            ConfigurationError: If any value is out of range
        """
        if self.write_mode not in WRITE_MODES:
            raise ConfigurationError(
                f"write_mode must be one of {WRITE_MODES}, got {self.write_mode!r}"
            )
        if self.parallel_downloads < 1:
            raise ConfigurationError(
                f"parallel_downloads must be >= 1, got {self.parallel_downloads}"
            )
        if self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError(
                f"request_timeout_seconds must be > 0, got {self.request_timeout_seconds}"
            )
        if self.progress_interval_seconds < 0:
            raise ConfigurationError(
                f"progress_interval_seconds must be >= 0, got {self.progress_interval_seconds}"
            )
        if self.tee_buffer_chunks < 1:
            raise ConfigurationError(
                f"tee_buffer_chunks must be >= 1, got {self.tee_buffer_chunks}"
            )
        if not self.allowed_extension.startswith("."):
            raise ConfigurationError(
                f"allowed_extension must start with '.', got {self.allowed_extension!r}"
            )

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Load configuration from environment variables only.

        Optional environment variables (with defaults):
            ARTIFACT_CACHE_DIR: .artifact_cache (default)
            ARTIFACT_WRITE_MODE: auto (default), stream or serialized
            ARTIFACT_PARALLEL_DOWNLOADS: 3 (default)
            ARTIFACT_ALLOW_OFFLINE: false (default)
            ARTIFACT_CHUNK_SIZE: 1048576 (default)
            ARTIFACT_REQUEST_TIMEOUT: 30 (default, seconds)
            ARTIFACT_PROGRESS_INTERVAL: 0.1 (default, seconds)

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        return cls._build({})

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "CacheConfig":
        """Load configuration from config.yaml and environment variables.

        Configuration priority (highest to lowest):
        1. Environment variables
        2. config.yaml file (under 'cache:' key)
        3. Dataclass defaults

        Args:
            config_path: YAML file to read (default: ./config.yaml, skipped if missing)

        Raises:
            ConfigurationError: If the file or a value is invalid
        """
        config_path = config_path or DEFAULT_CONFIG_PATH

        cache_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                try:
                    yaml_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Invalid YAML in {config_path}", cause=e
                    ) from e
            if not isinstance(yaml_data, dict):
                raise ConfigurationError(f"Expected a mapping in {config_path}")
            cache_data = yaml_data.get("cache", {}) or {}

        return cls._build(cache_data)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "CacheConfig":
        """Load configuration from a YAML file that must exist.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        return cls.load_config(config_path)

    @classmethod
    def _build(cls, data: Dict[str, Any]) -> "CacheConfig":
        try:
            return cls(
                cache_dir=Path(
                    os.getenv("ARTIFACT_CACHE_DIR", data.get("cache_dir", ".artifact_cache"))
                ),
                write_mode=os.getenv("ARTIFACT_WRITE_MODE", data.get("write_mode", "auto")),
                parallel_downloads=int(
                    os.getenv(
                        "ARTIFACT_PARALLEL_DOWNLOADS", data.get("parallel_downloads", 3)
                    )
                ),
                allow_offline=_as_bool(
                    os.getenv("ARTIFACT_ALLOW_OFFLINE", data.get("allow_offline", False))
                ),
                chunk_size=int(
                    os.getenv("ARTIFACT_CHUNK_SIZE", data.get("chunk_size", 1024 * 1024))
                ),
                request_timeout_seconds=float(
                    os.getenv(
                        "ARTIFACT_REQUEST_TIMEOUT", data.get("request_timeout_seconds", 30.0)
                    )
                ),
                progress_interval_seconds=float(
                    os.getenv(
                        "ARTIFACT_PROGRESS_INTERVAL",
                        data.get("progress_interval_seconds", 0.1),
                    )
                ),
                tee_buffer_chunks=int(data.get("tee_buffer_chunks", 64)),
                allowed_extension=data.get("allowed_extension", DEFAULT_ARTIFACT_EXTENSION),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid cache configuration: {e}", cause=e) from e

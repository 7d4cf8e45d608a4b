"""Configuration management: environment variables, YAML overlays, validation."""
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from video_uploader.core.exceptions import ConfigurationException

MIB = 1024 * 1024


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(Enum):
    """Log levels accepted by the logging setup."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class StorageConfig:
    """Filesystem layout and limits consumed by the upload core."""
    upload_path: Path
    temp_upload_path: Path
    tus_storage_dir: Optional[Path]
    max_upload_bytes: int
    max_chunk_bytes: int
    copy_buffer_size: int
    session_ttl: int
    cleanup_interval: int
    request_timeout: int
    max_total_chunks: int = 100_000


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""
    level: LogLevel
    format: str
    log_dir: Path
    max_file_size: int
    backup_count: int
    enable_console: bool
    enable_file: bool


class Settings(BaseSettings):
    """Application settings read from the environment and ``.env`` files.

    Size limits are read in the units operators set them in:
    ``MAX_UPLOAD_SIZE`` and ``MAX_MEMORY`` are expressed in MiB.
    """

    model_config = SettingsConfigDict(
        env_file=[".env", ".env.local"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="Video Uploader", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Deployment environment")

    # Server
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    shutdown_timeout: int = Field(default=10, ge=1, le=600, description="Graceful shutdown deadline (s)")

    # Upload limits
    max_upload_size: int = Field(default=10240, ge=1, description="Total upload ceiling (MiB)")
    max_memory: int = Field(default=256, ge=1, description="Per-chunk payload ceiling (MiB)")
    max_concurrent_chunks: int = Field(default=5, ge=1, le=64, description="Client concurrency hint")
    max_total_chunks: int = Field(default=100_000, ge=1, le=10_000_000, description="Most chunks one upload may declare")

    # Storage
    upload_path: str = Field(default="./uploads", description="Output directory")
    temp_upload_path: str = Field(default="./temp_uploads", description="Staging directory")
    tus_storage_dir: Optional[str] = Field(default=None, description="tusd file store directory")

    # Sessions and transfers
    session_ttl: int = Field(default=86400, ge=60, description="Idle seconds before a session expires")
    cleanup_interval: int = Field(default=300, ge=1, description="Expiry sweep period (s)")
    request_timeout: int = Field(default=3600, ge=1, description="Per-chunk copy deadline (s)")
    copy_buffer_size: int = Field(default=32 * 1024, ge=1024, le=16 * MIB, description="Copy buffer (bytes)")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
    )
    log_dir: str = Field(default="logs")
    log_max_file_size: int = Field(default=10 * MIB, ge=MIB, le=1024 * MIB)
    log_backup_count: int = Field(default=10, ge=1, le=50)
    log_enable_console: bool = Field(default=True)
    log_enable_file: bool = Field(default=False)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        """Accept environment names in any case."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v):
        """Accept log level names in any case."""
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @field_validator("tus_storage_dir", mode="before")
    @classmethod
    def empty_tus_dir_is_unset(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_dependencies(self):
        """Cross-field checks."""
        upload = Path(self.upload_path).expanduser().resolve()
        staging = Path(self.temp_upload_path).expanduser().resolve()
        if upload == staging:
            raise ValueError("upload_path and temp_upload_path must be different directories")
        if staging in upload.parents:
            raise ValueError("upload_path must not live inside temp_upload_path, it is wiped on startup")

        if self.max_memory > self.max_upload_size:
            raise ValueError("max_memory (per chunk) cannot exceed max_upload_size")

        if self.environment == Environment.PRODUCTION and not self.log_enable_file:
            raise ValueError("Production environment requires file logging enabled")

        return self

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size * MIB

    @property
    def max_chunk_bytes(self) -> int:
        return self.max_memory * MIB

    def get_storage_config(self) -> StorageConfig:
        """Build the storage configuration passed to the upload core."""
        return StorageConfig(
            upload_path=Path(self.upload_path).expanduser().resolve(),
            temp_upload_path=Path(self.temp_upload_path).expanduser().resolve(),
            tus_storage_dir=Path(self.tus_storage_dir).expanduser().resolve() if self.tus_storage_dir else None,
            max_upload_bytes=self.max_upload_bytes,
            max_chunk_bytes=self.max_chunk_bytes,
            copy_buffer_size=self.copy_buffer_size,
            session_ttl=self.session_ttl,
            cleanup_interval=self.cleanup_interval,
            request_timeout=self.request_timeout,
            max_total_chunks=self.max_total_chunks
        )

    def get_logging_config(self) -> LoggingConfig:
        """Build the logging configuration."""
        return LoggingConfig(
            level=self.log_level,
            format=self.log_format,
            log_dir=Path(self.log_dir),
            max_file_size=self.log_max_file_size,
            backup_count=self.log_backup_count,
            enable_console=self.log_enable_console,
            enable_file=self.log_enable_file
        )


class ConfigManager:
    """Loads settings once at process entry.

    An optional YAML file supplies values that take precedence over the
    environment. The manager is constructed explicitly and handed to the
    application factory; nothing reads configuration from module globals.
    """

    def __init__(self, config_file: Optional[str] = None, **overrides: Any):
        self.config_file = config_file
        self._overrides = overrides
        self._settings: Optional[Settings] = None
        self._load_settings()

    def _load_settings(self) -> None:
        values: Dict[str, Any] = {}
        if self.config_file:
            path = Path(self.config_file)
            if not path.exists():
                raise ConfigurationException(f"Config file not found: {path}", config_key="config_file")
            try:
                with open(path, "r", encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationException(f"Invalid YAML in {path}: {e}", config_key="config_file")
            if not isinstance(config_data, dict):
                raise ConfigurationException(f"Config file {path} must contain a mapping")
            values.update({str(k).lower(): v for k, v in config_data.items()})

        values.update(self._overrides)

        try:
            self._settings = Settings(**values)
        except ValueError as e:
            raise ConfigurationException(f"Failed to load settings: {e}")

    @property
    def settings(self) -> Settings:
        if not self._settings:
            raise ConfigurationException("Settings not initialized")
        return self._settings

    def get(self, key: str, default: Any = None) -> Any:
        """Get a single configuration value."""
        return getattr(self.settings, key, default)

    def reload(self) -> None:
        """Re-read the environment and config file."""
        self._load_settings()

    def export_config(self, format: Literal['yaml', 'json', 'env'] = 'yaml') -> str:
        """Export the effective configuration."""
        config_dict = self.settings.model_dump(mode="json")

        if format == 'json':
            return json.dumps(config_dict, indent=2, ensure_ascii=False)
        elif format == 'env':
            lines = []
            for key, value in config_dict.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list)):
                    lines.append(f"{key.upper()}='{json.dumps(value)}'")
                else:
                    lines.append(f"{key.upper()}={value}")
            return "\n".join(lines)
        else:
            return yaml.safe_dump(config_dict, default_flow_style=False, allow_unicode=True)


def load_settings(config_file: Optional[str] = None, **overrides: Any) -> Settings:
    """Convenience wrapper returning validated settings."""
    return ConfigManager(config_file, **overrides).settings

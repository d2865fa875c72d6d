"""Configuration management using YAML with environment overlay."""

import os
import sys
import yaml
import logging
from pathlib import Path
from functools import lru_cache
from typing import Optional, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Configuration file paths
CONFIG_FILE = Path("config.yaml")
SECRETS_FILE = Path("secrets.yaml")

DEFAULT_API_URL = "https://api.moonshot.cn/v1/chat/completions"
DEFAULT_MODEL = "kimi-k2.5"


class DownloadLimits(BaseModel):
    """Limits applied to every image acquisition. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    max_bytes: int = Field(10 * 1024 * 1024, description="Maximum image size", ge=1)
    timeout_seconds: float = Field(
        30.0, description="Wall-clock deadline for a download", gt=0
    )
    allowed_extensions: Tuple[str, ...] = Field(
        (".jpg", ".jpeg", ".png", ".gif", ".webp"),
        description="Accepted file extensions (lowercase, with dot)",
    )
    max_redirects: int = Field(5, description="Redirect hops to follow", ge=0)

    @field_validator("allowed_extensions")
    @classmethod
    def normalize_extensions(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        normalized = []
        for ext in v:
            ext = ext.lower()
            if not ext.startswith("."):
                ext = f".{ext}"
            normalized.append(ext)
        return tuple(normalized)

    @property
    def max_megabytes(self) -> float:
        return self.max_bytes / (1024 * 1024)


class KimiConfig(BaseModel):
    """Inference endpoint settings."""

    api_key: Optional[str] = None
    api_url: str = Field(DEFAULT_API_URL, description="Chat completions endpoint")
    default_model: str = Field(DEFAULT_MODEL, description="Model used by default")
    request_timeout: float = Field(
        120.0, description="Timeout for the inference call in seconds", gt=0
    )
    temperature: float = Field(1.0, description="Sampling temperature", ge=0.0, le=2.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Logging level")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class Settings(BaseSettings):
    """Unified settings for the kimi-vision server."""

    kimi: KimiConfig = Field(default_factory=KimiConfig)
    download: DownloadLimits = Field(default_factory=DownloadLimits)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",  # Allows KIMI__API_KEY env var
        extra="ignore",
        validate_default=True,
        frozen=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Customize settings sources to include YAML files and flat env vars."""
        from pydantic_settings.sources import PydanticBaseSettingsSource

        class YamlConfigSource(PydanticBaseSettingsSource):
            """Load settings from YAML files."""

            def get_field_value(
                self, field: FieldInfo, field_name: str
            ) -> Tuple[Any, str, bool]:
                data = self()
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

            def __call__(self) -> Dict[str, Any]:
                return cls._yaml_config_source()

        class LegacyEnvVars(PydanticBaseSettingsSource):
            """Load flat environment variables such as KIMI_API_KEY."""

            def get_field_value(
                self, field: FieldInfo, field_name: str
            ) -> Tuple[Any, str, bool]:
                data = self()
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

            def __call__(self) -> Dict[str, Any]:
                return cls._legacy_env_source()

        # Precedence (first source wins): init > nested env > flat env > yaml
        return (
            init_settings,
            env_settings,
            LegacyEnvVars(settings_cls),
            YamlConfigSource(settings_cls),
            file_secret_settings,
        )

    @classmethod
    def _yaml_config_source(cls) -> Dict[str, Any]:
        """Load configuration from YAML files."""
        config_data: Dict[str, Any] = {}

        # Under pytest, ignore a developer's config.yaml unless a test opts in
        if (
            "pytest" in sys.modules
            and "KIMI_VISION_CONFIG_FILE" not in os.environ
            and "KIMI_VISION_SECRETS_FILE" not in os.environ
        ):
            return {}

        config_file = Path(os.getenv("KIMI_VISION_CONFIG_FILE", str(CONFIG_FILE)))
        secrets_file = Path(os.getenv("KIMI_VISION_SECRETS_FILE", str(SECRETS_FILE)))

        if config_file.exists():
            try:
                with open(config_file) as f:
                    config_data = yaml.safe_load(f) or {}
                logger.debug(f"Loaded configuration from {config_file}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load {config_file}: {e}")

        if secrets_file.exists():
            try:
                with open(secrets_file) as f:
                    secrets_data = yaml.safe_load(f) or {}
                config_data = _deep_merge(config_data, secrets_data)
                logger.debug(f"Loaded secrets from {secrets_file}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load {secrets_file}: {e}")

        # "download:" with no content parses as None
        for key in list(config_data.keys()):
            if config_data[key] is None:
                config_data[key] = {}

        return config_data

    @classmethod
    def _legacy_env_source(cls) -> Dict[str, Any]:
        """Map flat environment variables to the nested structure."""
        config_data: Dict[str, Any] = {}

        legacy_mappings = {
            "KIMI_API_KEY": ("kimi", "api_key"),
            "KIMI_API_URL": ("kimi", "api_url"),
            "KIMI_DEFAULT_MODEL": ("kimi", "default_model"),
            "KIMI_REQUEST_TIMEOUT": ("kimi", "request_timeout"),
            "LOG_LEVEL": ("logging", "level"),
        }

        for env_key, path in legacy_mappings.items():
            value = os.getenv(env_key)
            if value is None:
                value = os.getenv(env_key.lower())

            if value is not None:
                current = config_data
                for key in path[:-1]:
                    current = current.setdefault(key, {})
                current[path[-1]] = value

        return config_data

    def require_api_key(self) -> str:
        """Return the bearer credential or fail the startup."""
        if not self.kimi.api_key:
            raise ConfigError("KIMI_API_KEY environment variable is not set")
        return self.kimi.api_key


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with b taking precedence."""
    result = a.copy()

    for key, value in b.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

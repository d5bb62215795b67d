"""
Configuration for a discovery session.

Settings come from an optional YAML file and are overridden by RELMAP_*
environment variables.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relmap.exceptions import ConfigError
from relmap.models import Confidence

logger = logging.getLogger(__name__)

ENV_PREFIX = "RELMAP_"


class DiscoveryConfig(BaseSettings):
    """Configuration for the Web API connection and discovery behaviour."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    base_url: str = Field(default="", description="Organization URL, with or without the API path")
    api_version: str = Field(default="v9.2", description="Web API version segment")
    access_token: Optional[str] = Field(default=None, description="Bearer token")
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    # Metadata calls are cheaper to throttle harder than data calls
    metadata_min_delay: float = Field(default=0.05, ge=0)
    metadata_max_concurrent: int = Field(default=3, ge=1)
    data_min_delay: float = Field(default=0.1, ge=0)
    data_max_concurrent: int = Field(default=5, ge=1)

    bulk_lookups: bool = False
    development_mode: bool = False
    use_relationship_definitions: bool = False
    discover_on_error: bool = True
    export_min_confidence: Confidence = Confidence.MEDIUM

    mappings_file: Optional[Path] = Field(default=None, description="YAML file of named mappings")
    extra_headers: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment first, so RELMAP_* wins over values from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @field_validator("export_min_confidence", mode="before")
    @classmethod
    def lowercase_confidence(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def api_url(self) -> str:
        """Base URL of the versioned Web API endpoint."""
        base = self.base_url.rstrip("/")
        if base.endswith(f"/api/data/{self.api_version}"):
            return base + "/"
        return f"{base}/api/data/{self.api_version}/"

    def require_base_url(self) -> None:
        """Raise ConfigError when no Web API URL is configured."""
        if not self.base_url.strip():
            raise ConfigError("base_url is required (set it in the config file or RELMAP_BASE_URL)")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiscoveryConfig:
        """
        Create from a dictionary, ignoring unknown keys with a warning.

        RELMAP_* environment variables still override the given values.
        """
        unknown = set(data) - set(cls.model_fields)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        try:
            return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, path: Optional[Path] = None) -> DiscoveryConfig:
        """
        Load configuration from a YAML file and the environment.

        Args:
            path: Optional YAML file with top-level config keys

        Returns:
            DiscoveryConfig with environment overrides applied
        """
        data: Dict[str, Any] = {}

        if path:
            path = Path(path)
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            with open(path, "r") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file must contain a mapping: {path}")
            data.update(loaded)
            logger.debug(f"Loaded config from {path}")

        return cls.from_dict(data)

"""autopipe settings: defaults, overridden by config.yaml, overridden by env.

Environment variables use the AUTOPIPE_ prefix with "__" between nesting
levels, e.g. AUTOPIPE_ORCHESTRATOR__LEASE_SECONDS=600. AUTOPIPE_CONFIG_FILE
points at a YAML file other than ./config.yaml.
"""

import os
from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

CONFIG_FILE_ENV = "AUTOPIPE_CONFIG_FILE"


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Reads nested settings sections from a YAML file, if one exists."""

    def get_field_value(self, field, field_name: str):
        # Whole-file source; per-field lookup is unused
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        path = Path(os.environ.get(CONFIG_FILE_ENV, "config.yaml"))
        if not path.is_file():
            return {}
        with path.open() as f:
            return yaml.safe_load(f) or {}


class StorageConfig(BaseModel):
    """Run store database configuration."""

    database_url: str = "sqlite+aiosqlite:///autopipe.db"


class ServerConfig(BaseModel):
    """Bind address for `python -m autopipe.api`."""

    host: str = "127.0.0.1"
    port: int = 8000


class OrchestratorConfig(BaseModel):
    """Run lifecycle policy.

    lease_seconds bounds how long a crashed kickoff can block a run.
    stage_retry_limit caps partial-failure resubmissions within one stage;
    max_manual_retries caps explicit retry() calls over the run's lifetime.
    """

    lease_seconds: int = 300
    stage_retry_limit: int = 3
    max_manual_retries: int = 5
    artifact_refresh_margin_seconds: int = 120
    sweep_idle_seconds: int = 120
    sweep_lock_seconds: int = 60
    sweep_batch_size: int = 200

    @field_validator("lease_seconds", "sweep_lock_seconds")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v


class CollaboratorsConfig(BaseModel):
    """Endpoints of the external stage services."""

    segmentation_url: str = "http://localhost:9001"
    images_url: str = "http://localhost:9002"
    narration_url: str = "http://localhost:9003"
    render_url: str = "http://localhost:9004"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    stale_job_seconds: int = 1800
    http_retry_attempts: int = 5


class Settings(BaseSettings):
    """Process-wide settings. Every field has a default, so no file is required."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="AUTOPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    collaborators: CollaboratorsConfig = CollaboratorsConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Env and .env win over the YAML file, which wins over init kwargs."""
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Loaded once at import; tests override through AUTOPIPE_* env vars
settings = Settings()

"""Application configuration (Pydantic v2). Load from visionhub.yml with optional env override."""

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_DATABASE_URL = "postgresql+psycopg2://localhost/visionhub"
DEFAULT_CONFIG_ENV_VAR = "VISIONHUB_CONFIG"
DEFAULT_CONFIG_FILENAME = "visionhub.yml"


class Settings(BaseModel):
    """
    Service config loaded from YAML.

    By default, the database_url may be overridden by the DATABASE_URL environment variable
    when loading the default config (but not when an explicit config_path is provided).
    """

    model_config = {"extra": "ignore"}

    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    forensics_dir: str = "logs/forensics"
    flight_log_capacity: int = Field(default=50_000, ge=100)
    models_base_path: str = "models"
    catalog_path: str | None = None
    max_concurrent_models: int = Field(default=3, ge=1)
    preload_models: list[str] = []
    model_load_timeout_seconds: float | None = 120.0
    pipeline_timeout_seconds: float | None = 60.0
    max_pipeline_workers: int = Field(default=4, ge=1)
    chat_endpoint: str | None = None

    @field_validator("preload_models", mode="before")
    @classmethod
    def split_preload(cls, v: Any) -> list[str]:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return list(v)

    @field_validator("log_level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()


_config: Settings | None = None


class ConfigLoader:
    """
    Helper responsible for loading Settings from YAML and environment.

    - load_from_yaml(path, apply_env_override): read a YAML file and optionally apply env overrides.
    - load_default(): resolve the default config path from VISIONHUB_CONFIG / visionhub.yml and
      apply DATABASE_URL override when present.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env: Mapping[str, str] = env if env is not None else os.environ

    def load_from_yaml(self, path: Path, apply_env_override: bool) -> Settings:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f)
        if not data:
            data = {}
        if apply_env_override and self._env.get("DATABASE_URL"):
            data["database_url"] = self._env["DATABASE_URL"]
        return Settings.model_validate(data)

    def load_default(self) -> Settings:
        """
        Load the default Settings, using VISIONHUB_CONFIG or visionhub.yml.

        DATABASE_URL (if set) overrides the YAML database_url or the default value.
        """
        path_str = self._env.get(DEFAULT_CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILENAME
        path = Path(path_str)
        if path.exists():
            return self.load_from_yaml(path, apply_env_override=True)

        settings = Settings()
        if self._env.get("DATABASE_URL"):
            settings = settings.model_copy(update={"database_url": self._env["DATABASE_URL"]})
        return settings


_loader = ConfigLoader()


def get_config(config_path: str | Path | None = None) -> Settings:
    """
    Return singleton config.

    - If config_path is given, load from it (without env overrides for database_url) and update the cache.
    - Otherwise, return the cached config if available, or load via ConfigLoader.load_default().
    """
    global _config
    if config_path is not None:
        _config = _loader.load_from_yaml(Path(config_path), apply_env_override=False)
        return _config
    if _config is not None:
        return _config
    _config = _loader.load_default()
    return _config


def reset_config() -> None:
    """Clear cached config (for tests)."""
    global _config
    _config = None

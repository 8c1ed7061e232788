from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class SyncConfig(BaseModel):
    """Configuration for the reconciliation pass."""

    max_concurrency: int = Field(default=8, ge=1)


class AuthConfig(BaseModel):
    """Caller token verification settings."""

    secret: Optional[str] = None
    algorithm: str = "HS256"
    audience: Optional[str] = None


class FieldflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    templates_path: Optional[str] = None
    default_template_id: str = "ppf-workflow-template"
    sync: SyncConfig = SyncConfig()
    auth: AuthConfig = AuthConfig()
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def load_config(path: Optional[str] = None) -> FieldflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FIELDFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FIELDFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FieldflowConfig(**data)
    else:
        config = FieldflowConfig()

    env_db_url = os.getenv("FIELDFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("FIELDFLOW_AUTH_SECRET")
    if env_secret:
        config.auth.secret = env_secret
    return config

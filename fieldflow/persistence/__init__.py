"""Persistence layer for fieldflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FieldflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .postgres import PostgresExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

_repository_instance: ExecutionRepository | None = None


def _build_repository(database_url: Optional[str]) -> ExecutionRepository:
    if not database_url:
        return InMemoryExecutionRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteExecutionRepository(database_url[len("sqlite://"):])
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[FieldflowConfig] = None
) -> ExecutionRepository:
    """Return the execution store shared by the CLI, gateway and reconciler.

    ``database_url`` wins, then ``FIELDFLOW_DATABASE_URL`` / ``DATABASE_URL``,
    then ``config.database_url``. ``sqlite://<path>`` and
    ``postgres(ql)://`` select the durable backends; both keep one row per
    ``task_id`` and reject stale ``revision`` writes with ``ConflictError``.
    With no URL the executions live in process memory and vanish on exit.

    The most recently built repository is cached; calls without arguments
    reuse it so every caller compares against the same revisions.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    _repository_instance = _build_repository(
        database_url
        or os.getenv("FIELDFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    return _repository_instance


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "PostgresExecutionRepository",
    "get_repository",
]

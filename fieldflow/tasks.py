"""Task lookup collaborator."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Protocol

import yaml

from .contracts import Task
from .errors import NotFoundError


class TaskDirectory(Protocol):
    """Read access to the external task system."""

    async def get_task(self, task_id: str) -> Task:
        """Return the task or raise :class:`NotFoundError`."""

    async def list_tasks(self) -> list[Task]:
        """Return every task known to the system."""


class InMemoryTaskDirectory(TaskDirectory):
    """Task directory backed by a dict; used by tests and the CLI."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: Dict[str, Task] = {t.id: t for t in tasks}

    def put(self, task: Task) -> None:
        self._tasks[task.id] = task

    async def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def list_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @classmethod
    def from_yaml(cls, path: str | Path) -> "InMemoryTaskDirectory":
        """Load tasks from a YAML document with a top-level ``tasks`` list."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(Task.model_validate(item) for item in data.get("tasks", []))

import pytest

import fieldflow.persistence as persistence
from fieldflow.engine import WorkflowStateMachine
from fieldflow.persistence import InMemoryExecutionRepository
from fieldflow.security import ADMIN, SUPERVISOR, TECHNICIAN, Caller, StaticCallerPolicy
from fieldflow.templates import default_registry
from tests.helpers import T0


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep a developer's config.yaml or database env out of the tests."""
    monkeypatch.setenv("FIELDFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))
    monkeypatch.delenv("FIELDFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("FIELDFLOW_AUTH_SECRET", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


@pytest.fixture
def repo():
    return InMemoryExecutionRepository()


@pytest.fixture
def machine(repo):
    return WorkflowStateMachine(repo, default_registry(), clock=lambda: T0)


@pytest.fixture
def policy():
    return StaticCallerPolicy(
        {
            "tech-token": Caller(user_id="tech-1", roles=[TECHNICIAN]),
            "sup-token": Caller(user_id="sup-1", roles=[SUPERVISOR]),
            "admin-token": Caller(user_id="admin-1", roles=[ADMIN]),
        }
    )

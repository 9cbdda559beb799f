from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from health_store import MetricService, SQLiteHealthDB  # noqa: E402
from metric_pipeline import build_rule_set, default_vocabulary  # noqa: E402


@pytest.fixture(scope="session")
def vocabulary():
    return default_vocabulary()


@pytest.fixture(scope="session")
def rule_set(vocabulary):
    return build_rule_set(vocabulary)


@pytest.fixture
def health_db(tmp_path):
    return SQLiteHealthDB(str(tmp_path / "vitalog-unit.sqlite"))


@pytest.fixture
def service(health_db, vocabulary, rule_set):
    return MetricService(health_db, vocabulary=vocabulary, rule_set=rule_set)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "vitalog-test.sqlite"
    monkeypatch.setenv("VITALOG_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; replies come from the fallback builder.
    monkeypatch.setenv("VITALOG_DISABLE_LLM", "true")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make

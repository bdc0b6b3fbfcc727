"""
Pytest configuration and fixtures for donor import tests.

Every test gets its own SQLite database under ``tmp_path`` with the schema
created, and the cached API collaborators are reset so settings changes made
by one test never leak into the next.
"""

import os

# Run the application lifespan (table creation) unless explicitly disabled.
os.environ.setdefault("SKIP_DB_INIT", "0")

import pytest
from fastapi.testclient import TestClient

from donor_import.api.dependencies import reset_dependencies
from donor_import.core.config import settings
from donor_import.db.session import get_engine, init_db, reset_engine


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    """
    Point the engine at a fresh SQLite file and create all tables.

    The Anthropic key is cleared so no test ever reaches the real provider.
    """
    monkeypatch.setattr(settings, "anthropic_api_key", "")
    monkeypatch.setattr(settings, "database_url", settings.database_url)
    reset_dependencies()
    reset_engine(f"sqlite:///{tmp_path / 'donor_import_test.db'}")
    init_db()

    yield

    get_engine().dispose()
    reset_dependencies()


@pytest.fixture
def app():
    from donor_import.main import app as fastapi_app

    fastapi_app.dependency_overrides.clear()
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client

"""Shared fixtures: a fresh sqlite file per test and an API client bound to it."""

import os
import tempfile

# Must be set before settings are first read (main initialises at import).
os.environ.setdefault("CONTACTS_ENVIRONMENT", "test")
os.environ.setdefault("CONTACTS_LOG_LEVEL", "WARNING")
os.environ.setdefault(
    "CONTACTS_DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "contacts.db")
)

import pytest
from fastapi.testclient import TestClient

from db_setup import ContactStore, init_db


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    store = ContactStore.open(db_path)
    yield store
    store.close()


@pytest.fixture
def client(db_path):
    from main import app, get_store

    def _get_store():
        store = ContactStore.open(db_path)
        try:
            yield store
        finally:
            store.close()

    app.dependency_overrides[get_store] = _get_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


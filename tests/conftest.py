"""
Pytest fixtures: a temporary sqlite event store seeded with a small,
known set of request lines.
"""
import sqlite3

import pytest
from fastapi.testclient import TestClient

import main
from fulfillment_schema import initialize_event_store, load_events, load_users
from store import events as events_module

SAMPLE_USERS = [
    {"id": 1, "name": "Ana", "lastname": "Pérez"},
    {"id": 2, "name": "Luis", "lastname": None},
]

SAMPLE_EVENTS = [
    # R-100: two lines of a type B document, 5 of 10 units requested
    {
        "request": "R-100", "sales_order": "SO-1", "documentno": "42", "type_document": "B",
        "ean": "111", "qty": 6, "qty_request": 3,
        "assigned_at": "2024-05-01 08:00:00", "updated_at": "2024-05-01 08:30:00", "userId": 1,
    },
    {
        "request": "R-100", "sales_order": "SO-1", "documentno": "42", "type_document": "B",
        "ean": "222", "qty": 4, "qty_request": 2,
        "assigned_at": "2024-05-01T08:10:00", "updated_at": "2024-05-01T09:00:00", "userId": 1,
    },
    # R-200: nothing scanned yet
    {
        "request": "R-200", "sales_order": "SO-2", "documentno": "77", "type_document": "A",
        "ean": "333", "qty": 0, "qty_request": None,
        "assigned_at": "2024-05-01 10:00:00", "updated_at": "2024-05-01 10:00:05", "userId": 2,
    },
    # Before the reporting window
    {
        "request": "R-300", "sales_order": "SO-3", "documentno": "90", "type_document": "A",
        "ean": "444", "qty": 1, "qty_request": 1,
        "assigned_at": "2024-04-20 08:00:00", "updated_at": "2024-04-20 08:05:00", "userId": 1,
    },
]


@pytest.fixture
def db_path(tmp_path):
    """Path to an empty, initialized event store."""
    path = tmp_path / "fulfillment.db"
    connection = sqlite3.connect(path)
    initialize_event_store(connection)
    connection.close()
    return str(path)


@pytest.fixture
def seed(db_path):
    """Insert users and events into the temporary store."""

    def _seed(events, users=()):
        connection = sqlite3.connect(db_path)
        try:
            if users:
                load_users(connection, users)
            load_events(connection, events)
        finally:
            connection.close()

    return _seed


@pytest.fixture
def sample_db(db_path, seed):
    seed(SAMPLE_EVENTS, SAMPLE_USERS)
    return db_path


@pytest.fixture
def client(sample_db, monkeypatch):
    monkeypatch.setattr(events_module, "DB_PATH", sample_db)
    return TestClient(main.app)

"""Schema and load helpers for the fulfillment event log.

The monitor only ever reads these tables. The helpers here exist so a local
database (or a test fixture) can be created with the same layout the upstream
capture system writes.
"""

from __future__ import annotations

import sqlite3
from typing import Iterable, Mapping

# -------------------------- DDL DEFINITIONS --------------------------

EVENT_STORE_DDL = """
CREATE TABLE IF NOT EXISTS "user" (
    id INTEGER PRIMARY KEY,
    name TEXT,
    lastname TEXT
);

-- One row per scan/update of a request line
CREATE TABLE IF NOT EXISTS log_request (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request TEXT NOT NULL,
    sales_order TEXT,
    documentno TEXT,
    type_document TEXT,
    ean TEXT,
    qty REAL,
    qty_request REAL,
    assigned_at TIMESTAMP,
    updated_at TIMESTAMP,
    "userId" INTEGER,
    FOREIGN KEY ("userId") REFERENCES "user"(id)
);

CREATE INDEX IF NOT EXISTS idx_log_request_assigned_at ON log_request (assigned_at);
"""

EVENT_COLUMNS = (
    "request",
    "sales_order",
    "documentno",
    "type_document",
    "ean",
    "qty",
    "qty_request",
    "assigned_at",
    "updated_at",
    "userId",
)


# -------------------------- SETUP HELPERS --------------------------

def initialize_event_store(connection: sqlite3.Connection) -> None:
    """Create the event log and user tables."""

    cursor = connection.cursor()
    cursor.executescript(EVENT_STORE_DDL)
    connection.commit()


# --------------------------- LOAD HELPERS ---------------------------

def load_users(connection: sqlite3.Connection, users: Iterable[Mapping[str, object]]) -> None:
    cursor = connection.cursor()
    cursor.executemany(
        'INSERT OR REPLACE INTO "user" (id, name, lastname) VALUES (?, ?, ?)',
        [(user["id"], user.get("name"), user.get("lastname")) for user in users],
    )
    connection.commit()


def load_events(connection: sqlite3.Connection, events: Iterable[Mapping[str, object]]) -> int:
    """Insert raw ``log_request`` rows; missing columns are stored as NULL."""

    quoted = ", ".join(f'"{column}"' for column in EVENT_COLUMNS)
    placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
    rows = [tuple(event.get(column) for column in EVENT_COLUMNS) for event in events]
    cursor = connection.cursor()
    cursor.executemany(
        f"INSERT INTO log_request ({quoted}) VALUES ({placeholders})",
        rows,
    )
    connection.commit()
    return len(rows)


__all__ = ["EVENT_COLUMNS", "initialize_event_store", "load_events", "load_users"]

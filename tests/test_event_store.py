"""
Tests for the read-only event store accessor.
"""
import sqlite3
from datetime import datetime

import pytest

from report.engine import UNDEFINED, ProgressReportEngine
from store.events import DataSourceError, open_event_store

SINCE = datetime(2024, 5, 1)


def event(**overrides):
    values = {
        "request": "R-1", "sales_order": "SO-1", "documentno": "1", "type_document": "A",
        "ean": "111", "qty": 1, "qty_request": 1,
        "assigned_at": "2024-05-02 08:00:00", "updated_at": "2024-05-02 08:10:00", "userId": 1,
    }
    values.update(overrides)
    return values


def test_fetch_events_filters_by_lower_bound(sample_db):
    with open_event_store(sample_db) as store:
        events = store.fetch_events(SINCE)

    assert sorted(e.request_id for e in events) == ["R-100", "R-100", "R-200"]
    assert all(e.assigned_at >= SINCE for e in events)


def test_lower_bound_includes_time_of_day(sample_db):
    with open_event_store(sample_db) as store:
        events = store.fetch_events(datetime(2024, 5, 1, 8, 5))

    assert sorted(e.request_id for e in events) == ["R-100", "R-200"]


def test_lower_bound_keeps_sub_second_precision(db_path, seed):
    seed([
        event(request="R-early", assigned_at="2024-05-02 08:00:00.500"),
        event(request="R-late", assigned_at="2024-05-02 08:00:00.900"),
    ])

    with open_event_store(db_path) as store:
        events = store.fetch_events(datetime(2024, 5, 2, 8, 0, 0, 700000))

    assert [e.request_id for e in events] == ["R-late"]
    assert events[0].assigned_at == datetime(2024, 5, 2, 8, 0, 0, 900000)


def test_null_requested_quantity_reads_as_zero(sample_db):
    with open_event_store(sample_db) as store:
        (pending,) = [e for e in store.fetch_events(SINCE) if e.request_id == "R-200"]

    assert pending.quantity_requested == 0.0
    assert pending.quantity_scanned == 0.0
    assert pending.assignee_id == 2


def test_assignee_names(sample_db):
    with open_event_store(sample_db) as store:
        names = store.fetch_assignee_names([1, 2, None, 99, 1])

    assert names == {1: "Ana Pérez", 2: "Luis"}


def test_snapshot_wraps_reads_in_one_transaction(sample_db):
    with open_event_store(sample_db) as store:
        with store.snapshot():
            assert store.connection.in_transaction
            store.fetch_events(SINCE)
        assert not store.connection.in_transaction


@pytest.mark.parametrize(
    "bad_event",
    [
        event(qty="abc"),
        event(qty=-1),
        event(qty_request="many"),
        event(updated_at="not a date"),
        event(updated_at=None),
        event(assigned_at="2024/05/03 08:00"),
        event(assigned_at=None),
        event(userId="abc"),
        event(userId=1.5),
    ],
)
def test_malformed_rows_abort_the_read(db_path, seed, bad_event):
    seed([event(request="R-ok"), bad_event])

    with open_event_store(db_path) as store:
        with pytest.raises(DataSourceError):
            store.fetch_events(SINCE)


def test_missing_database(tmp_path):
    with pytest.raises(DataSourceError):
        with open_event_store(str(tmp_path / "missing.db")) as store:
            store.fetch_events(SINCE)


def test_missing_tables(tmp_path):
    path = tmp_path / "empty.db"
    sqlite3.connect(path).close()

    with open_event_store(str(path)) as store:
        with pytest.raises(DataSourceError):
            store.fetch_events(SINCE)


def test_store_is_read_only(sample_db):
    with open_event_store(sample_db) as store:
        with pytest.raises(sqlite3.OperationalError):
            store.connection.execute("DELETE FROM log_request")


def test_engine_against_sample_store(sample_db):
    with open_event_store(sample_db) as store:
        report = ProgressReportEngine(store).build(SINCE)

    assert report.row_count == 2
    first, second = report.rows
    assert first.request_id == "R-100"
    assert first.document_number == "1042"
    assert first.progress_percent.value == pytest.approx(50.0)
    assert first.distinct_item_count == 2
    assert first.elapsed_ms == 3_600_000
    assert first.assignee_name == "Ana Pérez"
    assert second.request_id == "R-200"
    assert second.progress_percent is UNDEFINED
    assert second.elapsed_ms == 5_000
    assert report.fleet_statistics.average_elapsed_ms == pytest.approx(1_802_500)
    assert report.fleet_statistics.average_elapsed_formatted == "00:30:02"


def test_cancel_on_idle_connection_is_harmless(sample_db):
    with open_event_store(sample_db) as store:
        store.cancel()
        assert len(store.fetch_events(SINCE)) == 3

"""Read-only access to the fulfillment event log.

Every report request opens its own connection through :func:`open_event_store`
and reads inside a single transaction, so the events and the assignee names a
report is built from always come from the same database state. Any failure to
read (missing database, rejected query, malformed row) surfaces as
:class:`DataSourceError` and no partial result is returned.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import pandas as pd

DB_PATH = os.getenv("DB_PATH", "/data/fulfillment_monitor.db")
NAME_LOOKUP_CHUNK = 500

logger = logging.getLogger(__name__)


class DataSourceError(RuntimeError):
    """The event store is unreachable, rejected a query or returned a malformed row."""


@dataclass(frozen=True)
class FulfillmentEvent:
    """One recorded scan/update of a request line."""

    request_id: str
    sales_order_id: Optional[str]
    document_number: Optional[str]
    document_type: Optional[str]
    item_code: Optional[str]
    quantity_scanned: float
    quantity_requested: float
    assigned_at: datetime
    updated_at: datetime
    assignee_id: Optional[int] = None


# Second-resolution prefilter; the exact bound is applied after coercion.
# Rows sqlite cannot parse are kept so they are rejected as malformed.
EVENTS_SQL = """
    SELECT
        lr.request,
        lr.sales_order,
        lr.documentno,
        lr.type_document,
        lr.ean,
        lr.qty,
        lr.qty_request,
        lr.assigned_at,
        lr.updated_at,
        lr."userId" AS user_id
    FROM log_request lr
    WHERE datetime(lr.assigned_at) >= datetime(?)
       OR datetime(lr.assigned_at) IS NULL
"""


def _optional_text(value: Any) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or pd.isna(value):
        return None
    return int(value)


def _coerce_ids(frame: pd.DataFrame, column: str) -> pd.Series:
    raw = frame[column]
    numeric = pd.to_numeric(raw, errors="coerce")
    invalid = (numeric.isna() & raw.notna()) | (numeric.notna() & (numeric % 1 != 0))
    if invalid.any():
        raise DataSourceError(f"{int(invalid.sum())} row(s) with non-integer `{column}`")
    return numeric


def _align_bound(bound: pd.Timestamp, timestamps: pd.Series) -> pd.Timestamp:
    """Match the bound's timezone awareness to the parsed column (naive means UTC)."""
    column_tz = getattr(timestamps.dt, "tz", None)
    if column_tz is not None and bound.tzinfo is None:
        return bound.tz_localize("UTC")
    if column_tz is None and bound.tzinfo is not None:
        return bound.tz_convert("UTC").tz_localize(None)
    return bound


def _coerce_quantities(frame: pd.DataFrame, column: str) -> pd.Series:
    raw = frame[column]
    numeric = pd.to_numeric(raw, errors="coerce")
    invalid = numeric.isna() & raw.notna()
    if invalid.any():
        raise DataSourceError(f"{int(invalid.sum())} row(s) with non-numeric `{column}`")
    negative = numeric < 0
    if negative.any():
        raise DataSourceError(f"{int(negative.sum())} row(s) with negative `{column}`")
    # NULL quantities count as zero, as COALESCE/SUM would treat them
    return numeric.fillna(0.0).astype(float)


def _coerce_timestamps(frame: pd.DataFrame, column: str) -> pd.Series:
    try:
        parsed = pd.to_datetime(frame[column], errors="coerce", format="ISO8601")
    except (TypeError, ValueError) as exc:
        raise DataSourceError(f"unparsable timestamps in `{column}`: {exc}") from exc
    invalid = parsed.isna()
    if invalid.any():
        raise DataSourceError(
            f"{int(invalid.sum())} row(s) with missing or unparsable `{column}`"
        )
    return parsed


def events_from_frame(
    frame: pd.DataFrame, lower_bound: Optional[datetime] = None
) -> List[FulfillmentEvent]:
    """Convert a ``log_request`` result frame into events, rejecting malformed rows.

    When ``lower_bound`` is given, only rows with ``assigned_at >= lower_bound``
    are kept. The check runs after coercion, at full timestamp precision.
    """

    if frame.empty:
        return []

    missing_request = frame["request"].isna()
    if missing_request.any():
        raise DataSourceError(f"{int(missing_request.sum())} row(s) without a request id")

    frame = frame.copy()
    frame["qty"] = _coerce_quantities(frame, "qty")
    frame["qty_request"] = _coerce_quantities(frame, "qty_request")
    frame["user_id"] = _coerce_ids(frame, "user_id")
    frame["assigned_at"] = _coerce_timestamps(frame, "assigned_at")
    frame["updated_at"] = _coerce_timestamps(frame, "updated_at")

    if lower_bound is not None:
        bound = _align_bound(pd.Timestamp(lower_bound), frame["assigned_at"])
        try:
            frame = frame[frame["assigned_at"] >= bound]
        except TypeError as exc:
            raise DataSourceError(f"cannot compare `assigned_at` with {bound}: {exc}") from exc

    events: List[FulfillmentEvent] = []
    for record in frame.to_dict("records"):
        events.append(
            FulfillmentEvent(
                request_id=str(record["request"]),
                sales_order_id=_optional_text(record["sales_order"]),
                document_number=_optional_text(record["documentno"]),
                document_type=_optional_text(record["type_document"]),
                item_code=_optional_text(record["ean"]),
                quantity_scanned=float(record["qty"]),
                quantity_requested=float(record["qty_request"]),
                assigned_at=record["assigned_at"].to_pydatetime(),
                updated_at=record["updated_at"].to_pydatetime(),
                assignee_id=_optional_int(record["user_id"]),
            )
        )
    return events


class EventStore:
    """Read-only view over ``log_request`` and ``user`` on one connection."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection

    @contextmanager
    def snapshot(self) -> Iterator["EventStore"]:
        """Run the enclosed reads inside one read transaction."""

        try:
            self.connection.execute("BEGIN")
        except sqlite3.Error as exc:
            raise DataSourceError(f"failed to open read transaction: {exc}") from exc
        try:
            yield self
        finally:
            if self.connection.in_transaction:
                try:
                    self.connection.execute("ROLLBACK")
                except sqlite3.Error as exc:
                    raise DataSourceError(f"failed to close read transaction: {exc}") from exc

    def cancel(self) -> None:
        """Abort any statement currently running on this connection."""

        logger.debug("interrupting event store query")
        self.connection.interrupt()

    def fetch_events(self, lower_bound: datetime) -> List[FulfillmentEvent]:
        """Return every event assigned at or after ``lower_bound``."""

        bound = pd.Timestamp(lower_bound).isoformat(sep=" ")
        cursor = self.connection.cursor()
        try:
            cursor.execute(EVENTS_SQL, (bound,))
            columns = [description[0] for description in cursor.description]
            frame = pd.DataFrame.from_records(cursor.fetchall(), columns=columns)
        except sqlite3.Error as exc:
            raise DataSourceError(f"event query failed: {exc}") from exc
        finally:
            cursor.close()

        events = events_from_frame(frame, lower_bound)
        logger.debug("fetched %d event(s) assigned since %s", len(events), bound)
        return events

    def fetch_assignee_names(self, assignee_ids: Iterable[Optional[int]]) -> Dict[int, str]:
        """Resolve display names (``name lastname``) for the given user ids."""

        ids: Sequence[int] = sorted({i for i in assignee_ids if i is not None})
        names: Dict[int, str] = {}
        cursor = self.connection.cursor()
        try:
            for start in range(0, len(ids), NAME_LOOKUP_CHUNK):
                chunk = ids[start:start + NAME_LOOKUP_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                rows = cursor.execute(
                    f'SELECT id, name, lastname FROM "user" WHERE id IN ({placeholders})',
                    tuple(chunk),
                ).fetchall()
                for user_id, name, lastname in rows:
                    names[user_id] = " ".join(str(part) for part in (name, lastname) if part)
        except sqlite3.Error as exc:
            raise DataSourceError(f"assignee lookup failed: {exc}") from exc
        finally:
            cursor.close()
        return names


@contextmanager
def open_event_store(db_path: Optional[str] = None) -> Iterator[EventStore]:
    """Open a read-only store handle for the duration of one report request."""

    path = Path(db_path or DB_PATH).resolve()
    try:
        connection = sqlite3.connect(
            f"{path.as_uri()}?mode=ro",
            uri=True,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise DataSourceError(f"cannot open event store at {path}: {exc}") from exc

    try:
        yield EventStore(connection)
    finally:
        connection.close()


__all__ = [
    "DB_PATH",
    "DataSourceError",
    "EventStore",
    "FulfillmentEvent",
    "events_from_frame",
    "open_event_store",
]

"""Fulfillment progress aggregation and report assembly."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from formatters import fmt_interval
from store.events import EventStore, FulfillmentEvent

DEFAULT_FONT_SIZE = int(os.getenv("DEFAULT_FONT_SIZE", "18"))
PREFIXED_DOCUMENT_TYPE = "B"
DOCUMENT_PREFIX = "10"

GroupKey = Tuple[str, Optional[str], Optional[str], Optional[str], Optional[int]]


@dataclass(frozen=True)
class Percent:
    """A progress ratio that is either known or undefined (no scanned quantity)."""

    value: Optional[float] = None

    @property
    def known(self) -> bool:
        return self.value is not None

    @classmethod
    def ratio(cls, numerator: float, denominator: float) -> "Percent":
        if denominator == 0:
            return UNDEFINED
        return cls(numerator / denominator * 100)


UNDEFINED = Percent()


@dataclass
class ProgressRow:
    """Progress metrics for one request/sales order/document/assignee group."""

    request_id: str
    sales_order_id: Optional[str]
    document_number: Optional[str]
    document_type: Optional[str]
    assignee_id: Optional[int]
    distinct_item_count: int
    total_quantity: float
    total_quantity_requested: float
    progress_percent: Percent
    window_start: datetime
    window_end: datetime
    elapsed_ms: int
    assignee_name: str = ""

    @property
    def group_key(self) -> GroupKey:
        return (
            self.request_id,
            self.sales_order_id,
            self.document_number,
            self.document_type,
            self.assignee_id,
        )


@dataclass(frozen=True)
class FleetStatistics:
    average_elapsed_ms: float
    average_elapsed_formatted: str


@dataclass(frozen=True)
class DisplayOptions:
    """Request-scoped rendering hints, passed through untouched."""

    sample_mode: bool = False
    font_size: int = DEFAULT_FONT_SIZE


@dataclass
class Report:
    rows: List[ProgressRow]
    row_count: int
    fleet_statistics: FleetStatistics
    window_start: datetime
    display: DisplayOptions = field(default_factory=DisplayOptions)


def transform_document_number(
    document_number: Optional[object], document_type: Optional[str]
) -> Optional[str]:
    """Type ``B`` documents are displayed with a ``10`` prefix."""

    if document_type == PREFIXED_DOCUMENT_TYPE:
        return DOCUMENT_PREFIX + ("" if document_number is None else str(document_number))
    if document_number is None:
        return None
    return str(document_number)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start) / timedelta(milliseconds=1)))


def aggregate(
    events: Sequence[FulfillmentEvent],
    names: Optional[Mapping[int, str]] = None,
) -> List[ProgressRow]:
    """Group events by request/document/assignee and compute progress metrics."""

    names = names or {}
    grouped: Dict[GroupKey, List[FulfillmentEvent]] = {}
    for event in events:
        key = (
            event.request_id,
            event.sales_order_id,
            transform_document_number(event.document_number, event.document_type),
            event.document_type,
            event.assignee_id,
        )
        grouped.setdefault(key, []).append(event)

    rows: List[ProgressRow] = []
    for (request_id, sales_order_id, document_number, document_type, assignee_id), members in grouped.items():
        total_quantity = float(sum(e.quantity_scanned for e in members))
        total_requested = float(sum(e.quantity_requested for e in members))
        window_start = min(e.assigned_at for e in members)
        window_end = max(e.updated_at for e in members)
        rows.append(
            ProgressRow(
                request_id=request_id,
                sales_order_id=sales_order_id,
                document_number=document_number,
                document_type=document_type,
                assignee_id=assignee_id,
                distinct_item_count=len({e.item_code for e in members if e.item_code is not None}),
                total_quantity=total_quantity,
                total_quantity_requested=total_requested,
                progress_percent=Percent.ratio(total_requested, total_quantity),
                window_start=window_start,
                window_end=window_end,
                elapsed_ms=_elapsed_ms(window_start, window_end),
                assignee_name=names.get(assignee_id, "") if assignee_id is not None else "",
            )
        )
    return rows


def compute_fleet_stats(rows: Sequence[ProgressRow]) -> FleetStatistics:
    """Average elapsed time across all rows; 0 when there are none."""

    if not rows:
        return FleetStatistics(average_elapsed_ms=0.0, average_elapsed_formatted=fmt_interval(0))
    average = sum(row.elapsed_ms for row in rows) / len(rows)
    if not math.isfinite(average):
        average = 0.0
    return FleetStatistics(
        average_elapsed_ms=float(average),
        average_elapsed_formatted=fmt_interval(average),
    )


def _text(value: object) -> str:
    return "" if value is None else str(value)


def sort_key(row: ProgressRow) -> Tuple[object, ...]:
    """Ascending progress with undefined percents last, then request id as text."""

    percent = row.progress_percent
    return (
        0 if percent.known else 1,
        percent.value if percent.known else 0.0,
        _text(row.request_id),
        _text(row.sales_order_id),
        _text(row.document_number),
        _text(row.document_type),
        _text(row.assignee_id),
    )


def assemble(
    rows: Sequence[ProgressRow],
    fleet_stats: FleetStatistics,
    window_start: datetime,
    *,
    sample_mode: bool = False,
    font_size: int = DEFAULT_FONT_SIZE,
) -> Report:
    """Order rows and bundle them with the fleet statistics."""

    return Report(
        rows=sorted(rows, key=sort_key),
        row_count=len(rows),
        fleet_statistics=fleet_stats,
        window_start=window_start,
        display=DisplayOptions(sample_mode=sample_mode, font_size=font_size),
    )


class ProgressReportEngine:
    """Build progress reports from one consistent read of the event store."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    def build(
        self,
        lower_bound: datetime,
        *,
        sample_mode: bool = False,
        font_size: int = DEFAULT_FONT_SIZE,
    ) -> Report:
        with self.store.snapshot():
            events = self.store.fetch_events(lower_bound)
            names = self.store.fetch_assignee_names(e.assignee_id for e in events)

        rows = aggregate(events, names)
        return assemble(
            rows,
            compute_fleet_stats(rows),
            lower_bound,
            sample_mode=sample_mode,
            font_size=font_size,
        )


__all__ = [
    "DisplayOptions",
    "FleetStatistics",
    "Percent",
    "ProgressReportEngine",
    "ProgressRow",
    "Report",
    "UNDEFINED",
    "aggregate",
    "assemble",
    "compute_fleet_stats",
    "sort_key",
    "transform_document_number",
]

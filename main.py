from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
import pandas as pd
import asyncio
import html
import logging
import os
import time
from datetime import datetime
from typing import List, Optional

from formatters import fmt_date, fmt_int, fmt_interval, fmt_percent
from report.engine import DEFAULT_FONT_SIZE, ProgressReportEngine, ProgressRow, Report
from store.events import DataSourceError, open_event_store

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("fulfillment_monitor")

app = FastAPI(title="Fulfillment Progress Monitor")

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Access log: method, path, status and duration."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


# ==================== Request parameters ====================

def parse_lower_bound(since: str) -> datetime:
    """Parse the ``since`` query value (date or datetime) into a lower bound."""
    try:
        parsed = pd.Timestamp(since)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid since value: {since!r}") from exc
    if pd.isna(parsed):
        raise HTTPException(status_code=400, detail=f"invalid since value: {since!r}")
    return parsed.to_pydatetime()


def parse_font_size(font: Optional[str]) -> int:
    try:
        size = int(float(font))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_FONT_SIZE
    return size if size > 0 else DEFAULT_FONT_SIZE


async def build_report(since: str, muestra: Optional[str], font: Optional[str]) -> Report:
    lower_bound = parse_lower_bound(since)
    sample_mode = muestra == "1"
    font_size = parse_font_size(font)

    with open_event_store() as store:
        engine = ProgressReportEngine(store)
        try:
            return await run_in_threadpool(
                engine.build, lower_bound, sample_mode=sample_mode, font_size=font_size
            )
        except asyncio.CancelledError:
            store.cancel()
            raise


# ==================== Response models ====================

class ProgressRowResponse(BaseModel):
    request_id: str
    sales_order_id: Optional[str] = None
    document_number: Optional[str] = None
    document_type: Optional[str] = None
    assignee_id: Optional[int] = None
    assignee_name: str = ""
    distinct_item_count: int
    total_quantity: float
    total_quantity_requested: float
    progress_percent: Optional[float] = None
    progress_display: str
    window_start: datetime
    window_end: datetime
    elapsed_ms: int
    elapsed_display: str

    @classmethod
    def from_row(cls, row: ProgressRow) -> "ProgressRowResponse":
        return cls(
            request_id=row.request_id,
            sales_order_id=row.sales_order_id,
            document_number=row.document_number,
            document_type=row.document_type,
            assignee_id=row.assignee_id,
            assignee_name=row.assignee_name,
            distinct_item_count=row.distinct_item_count,
            total_quantity=row.total_quantity,
            total_quantity_requested=row.total_quantity_requested,
            progress_percent=row.progress_percent.value,
            progress_display=fmt_percent(row.progress_percent),
            window_start=row.window_start,
            window_end=row.window_end,
            elapsed_ms=row.elapsed_ms,
            elapsed_display=fmt_interval(row.elapsed_ms),
        )


class FleetStatisticsResponse(BaseModel):
    average_elapsed_ms: float
    average_elapsed_formatted: str


class ReportResponse(BaseModel):
    window_start: datetime
    row_count: int
    fleet_statistics: FleetStatisticsResponse
    rows: List[ProgressRowResponse]
    sample_mode: bool = False
    font_size: int = DEFAULT_FONT_SIZE

    @classmethod
    def from_report(cls, report: Report) -> "ReportResponse":
        return cls(
            window_start=report.window_start,
            row_count=report.row_count,
            fleet_statistics=FleetStatisticsResponse(
                average_elapsed_ms=report.fleet_statistics.average_elapsed_ms,
                average_elapsed_formatted=report.fleet_statistics.average_elapsed_formatted,
            ),
            rows=[ProgressRowResponse.from_row(row) for row in report.rows],
            sample_mode=report.display.sample_mode,
            font_size=report.display.font_size,
        )


# ==================== HTML rendering ====================

TABLE_HEADERS = [
    "Request",
    "Sales order",
    "Document",
    "Type",
    "SKUs",
    "Qty",
    "Requested",
    "Progress",
    "From",
    "To",
    "Elapsed",
    "Assigned to",
]

ERROR_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>Error</title></head>
<body><h1>Report unavailable</h1><p>The report could not be generated. Try again later.</p></body>
</html>"""


def _cell(value: object) -> str:
    return f"<td>{html.escape('' if value is None else str(value))}</td>"


def render_report_html(report: Report) -> str:
    body_rows = []
    for row in report.rows:
        cells = [
            _cell(row.request_id),
            _cell(row.sales_order_id),
            _cell(row.document_number),
            _cell(row.document_type),
            _cell(fmt_int(row.distinct_item_count)),
            _cell(fmt_int(row.total_quantity)),
            _cell(fmt_int(row.total_quantity_requested)),
            _cell(fmt_percent(row.progress_percent)),
            _cell(fmt_date(row.window_start)),
            _cell(fmt_date(row.window_end)),
            _cell(fmt_interval(row.elapsed_ms)),
            _cell(row.assignee_name),
        ]
        body_rows.append("<tr>" + "".join(cells) + "</tr>")

    header = "".join(f"<th>{html.escape(title)}</th>" for title in TABLE_HEADERS)
    banner = '<p class="sample">Sample mode</p>' if report.display.sample_mode else ""
    return f"""<!doctype html>
<html>
<head><meta charset="utf-8"><title>Fulfillment progress</title></head>
<body class="{'sample' if report.display.sample_mode else 'live'}" style="font-size: {report.display.font_size}px">
{banner}
<h1>Fulfillment progress since {html.escape(fmt_date(report.window_start))}</h1>
<p>Requests: <strong>{html.escape(fmt_int(report.row_count))}</strong>
 | Average time: <strong>{html.escape(report.fleet_statistics.average_elapsed_formatted)}</strong></p>
<table>
<thead><tr>{header}</tr></thead>
<tbody>
{chr(10).join(body_rows)}
</tbody>
</table>
</body>
</html>"""


# ==================== Report API ====================

@app.get("/", response_class=HTMLResponse)
async def report_page(
    since: str = Query(..., description="Lower bound for assigned_at (date or datetime)"),
    muestra: Optional[str] = Query(None, description="1 to render in sample mode"),
    font: Optional[str] = Query(None, description="Font size hint in px"),
):
    try:
        report = await build_report(since, muestra, font)
    except DataSourceError:
        logger.exception("failed to build fulfillment report")
        return HTMLResponse(ERROR_PAGE, status_code=500)
    return HTMLResponse(render_report_html(report))


@app.get("/api/report", response_model=ReportResponse)
async def report_json(
    since: str = Query(..., description="Lower bound for assigned_at (date or datetime)"),
    muestra: Optional[str] = Query(None, description="1 to flag the report as a sample"),
    font: Optional[str] = Query(None, description="Font size hint in px"),
):
    try:
        report = await build_report(since, muestra, font)
    except DataSourceError as exc:
        logger.exception("failed to build fulfillment report")
        raise HTTPException(status_code=500, detail="report unavailable") from exc
    return ReportResponse.from_report(report)


@app.get("/healthz")
def healthz():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    logger.info("fulfillment monitor listening on http://%s:%s", HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT)

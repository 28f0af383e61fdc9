from __future__ import annotations

import math
import os
from datetime import datetime
from typing import Any, Optional

import pandas as pd

# Display constants
PLACEHOLDER = "-"
ZERO_DURATION = "00:00:00"
DATE_FORMAT = "%d/%m/%Y %H:%M:%S"
THOUSANDS_SEPARATOR = os.getenv("THOUSANDS_SEPARATOR", ".")
DECIMAL_SEPARATOR = os.getenv("DECIMAL_SEPARATOR", ",")


def _as_number(value: Any) -> Optional[float]:
    """Return ``value`` as a float, or ``None`` when missing, non-numeric or NaN."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def fmt_percent(value: Any) -> str:
    """One-decimal percentage, e.g. ``50.0%``; placeholder when unknown."""
    # Percent values carry their own "unknown" state
    if hasattr(value, "known"):
        value = value.value if value.known else None
    number = _as_number(value)
    if number is None or math.isinf(number):
        return PLACEHOLDER
    return f"{number:.1f}%"


def fmt_int(value: Any) -> str:
    """Locale-grouped number (``1.234.567`` by default); placeholder when unknown."""
    number = _as_number(value)
    if number is None or math.isinf(number):
        return PLACEHOLDER
    text = f"{number:,.3f}".rstrip("0").rstrip(".")
    integer_part, _, fraction = text.partition(".")
    integer_part = integer_part.replace(",", THOUSANDS_SEPARATOR)
    if fraction:
        return f"{integer_part}{DECIMAL_SEPARATOR}{fraction}"
    return integer_part if integer_part != "-0" else "0"


def fmt_date(value: Any) -> str:
    """``DD/MM/YYYY HH:MM:SS``; placeholder for missing or unparsable input."""
    if value is None or value == "":
        return PLACEHOLDER
    if not isinstance(value, datetime):
        try:
            value = pd.Timestamp(value)
        except (TypeError, ValueError):
            return PLACEHOLDER
    if pd.isna(value):
        return PLACEHOLDER
    return value.strftime(DATE_FORMAT)


def fmt_interval(ms: Any) -> str:
    """Zero-padded ``HH:MM:SS`` for a duration in milliseconds; hours do not wrap."""
    number = _as_number(ms)
    if number is None or not math.isfinite(number) or number <= 0:
        return ZERO_DURATION
    seconds = int(number // 1000)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


__all__ = ["PLACEHOLDER", "ZERO_DURATION", "fmt_date", "fmt_int", "fmt_interval", "fmt_percent"]

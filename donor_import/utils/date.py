"""
Date parsing utilities for donation dates.

Values arrive in whatever format the spreadsheet author used and are
standardized to ISO ``YYYY-MM-DD`` strings before they are stored.
"""

import pandas as pd
from typing import Any, Optional
import re
import logging

from donor_import.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

# Cleaning-strategy date formats
DATE_FORMAT_US = "US"
DATE_FORMAT_EU = "EU"
DATE_FORMAT_ISO = "ISO"
DATE_FORMAT_MIXED = "mixed"
DATE_FORMATS = (DATE_FORMAT_US, DATE_FORMAT_EU, DATE_FORMAT_ISO, DATE_FORMAT_MIXED)

_NUMERIC_DATE = re.compile(r'^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})$')
_ISO_DATE = re.compile(r'^\d{4}-\d{1,2}-\d{1,2}')

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _dayfirst_for(first: int, second: int, date_format: Optional[str]) -> bool:
    """Decide day-first vs month-first for a numeric date like 03/04/2024."""
    if date_format == DATE_FORMAT_EU:
        return True
    if date_format == DATE_FORMAT_US:
        return False
    if first > 12 and second <= 12:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(
    value: Any,
    *,
    date_format: Optional[str] = None,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[str]:
    """
    Parse a date value and return it as an ISO ``YYYY-MM-DD`` string.

    Supports formats:
    - ISO 8601: "2024-09-04" or "2024-09-04T23:09:18Z"
    - MM/DD/YYYY: "10/20/2025"
    - DD/MM/YYYY: "20/10/2025"
    - Written dates: "March 3, 2024", "3 Mar 2024"

    Args:
        value: Date value in any supported format
        date_format: Cleaning-strategy hint. "EU" forces day-first and "US"
            forces month-first for numeric dates; "ISO"/"mixed"/None decide
            per value, using ``settings.date_default_dayfirst`` when ambiguous.

    Returns:
        ISO date string, or None if parsing fails
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    text = str(value).strip()
    if text == "":
        return None

    parse_attempts = []
    numeric_match = _NUMERIC_DATE.match(text)
    if numeric_match:
        first, second, year = numeric_match.groups()
        normalized = f"{first}/{second}/{year}"
        year_code = "%Y" if len(year) == 4 else "%y"
        dayfirst_preferred = _dayfirst_for(int(first), int(second), date_format)
        formats = [f"%d/%m/{year_code}", f"%m/%d/{year_code}"]
        if not dayfirst_preferred:
            formats.reverse()
        # A forced format never falls back to the other reading.
        if date_format in (DATE_FORMAT_US, DATE_FORMAT_EU):
            formats = formats[:1]
        for fmt in formats:
            parse_attempts.append(
                lambda v, fmt=fmt, normalized=normalized: pd.to_datetime(normalized, format=fmt, errors='raise')
            )
    else:
        parse_attempts.append(lambda v: pd.to_datetime(v, errors='raise'))

    dt = None
    last_error = None
    for attempt in parse_attempts:
        try:
            dt = attempt(text)
            break
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc

    if dt is None or pd.isna(dt):
        if log_failures:
            _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
        return None

    return dt.strftime('%Y-%m-%d')


def detect_date_column(values: list) -> bool:
    """
    Detect if a column contains date values based on pattern analysis.

    Returns:
        True if at least half of the non-empty values parse as dates
    """
    non_empty = [v for v in values if v is not None and str(v).strip()]
    if not non_empty:
        return False

    total_checked = min(len(non_empty), 20)
    successful_parses = sum(
        1 for v in non_empty[:total_checked] if parse_flexible_date(v, log_failures=False) is not None
    )
    return (successful_parses / total_checked) >= 0.5


def infer_date_format(values: list) -> str:
    """
    Infer the cleaning-strategy date format used by a column.

    Returns:
        One of "ISO", "US", "EU" or "mixed"
    """
    non_empty = [str(v).strip() for v in values if v is not None and str(v).strip()]
    if not non_empty:
        return DATE_FORMAT_MIXED

    if all(_ISO_DATE.match(v) for v in non_empty):
        return DATE_FORMAT_ISO

    dayfirst_votes = monthfirst_votes = 0
    for v in non_empty:
        match = _NUMERIC_DATE.match(v)
        if not match:
            continue
        first, second = int(match.group(1)), int(match.group(2))
        if first > 12 >= second:
            dayfirst_votes += 1
        elif second > 12 >= first:
            monthfirst_votes += 1

    if dayfirst_votes and not monthfirst_votes:
        return DATE_FORMAT_EU
    if monthfirst_votes and not dayfirst_votes:
        return DATE_FORMAT_US
    return DATE_FORMAT_MIXED

"""
Timestamp parsing for dataset rows.

Accepts anything pandas can parse as a date-time, plus the bare ``YYYY-MM``
month format used by police open-data exports, which is read as the last
instant of that month. Numbers, and strings holding a plain number (what a
CSV chunk read with dtype=str contains), are Unix epoch seconds. Relative
keywords such as "now" or "today" are rejected so a row never takes the
clock time of the run.

Every parsed value is returned as a naive pandas Timestamp in UTC so rows
from mixed-offset sources compare correctly. Unparsable input yields None;
callers drop such rows rather than failing.
"""

from __future__ import annotations

import math
import re
import warnings
from typing import Any

import pandas as pd

_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")
_EPOCH = re.compile(r"^[+-]?\d+(?:\.\d*)?$")
_RELATIVE_KEYWORDS = frozenset({"now", "today", "tomorrow", "yesterday"})


def _to_naive_utc(ts: pd.Timestamp) -> pd.Timestamp:
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _from_epoch(number: float) -> pd.Timestamp | None:
    if not math.isfinite(number):
        return None
    try:
        return pd.Timestamp(number, unit="s")
    except (ValueError, OverflowError, pd.errors.OutOfBoundsDatetime):
        return None


def parse_timestamp(value: Any) -> pd.Timestamp | None:
    """
    Parse a raw cell into a naive UTC Timestamp.

    Args:
        value: A string, number, datetime-like object or None.

    Returns:
        The parsed Timestamp, or None when the value is blank or unparsable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else _to_naive_utc(value)

    text = str(value).strip()
    if not text or text.lower() in _RELATIVE_KEYWORDS:
        return None
    if _EPOCH.match(text):
        return _from_epoch(float(text))

    try:
        if _YEAR_MONTH.match(text):
            # End of month, down to the last nanosecond.
            return pd.Period(text, freq="M").end_time
        with warnings.catch_warnings():
            # pandas warns when it has to guess a format per element.
            warnings.simplefilter("ignore", UserWarning)
            ts = pd.Timestamp(text)
    except (ValueError, OverflowError, pd.errors.OutOfBoundsDatetime):
        return None

    if pd.isna(ts):
        return None
    return _to_naive_utc(ts)


def epoch_seconds(ts: pd.Timestamp) -> float:
    """Seconds since the Unix epoch for a naive UTC Timestamp."""
    return ts.value / 1e9

"""Scoring-period labels.

A period is an ISO calendar week (Monday start), labelled ``"<iso-year>-W<week>"``
with the week number unpadded, e.g. ``"2026-W42"``.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Callable

PERIOD_RE = re.compile(r"^(\d{4})-W(\d{1,2})$")

PeriodClock = Callable[[], str]


def period_label(day: date | datetime) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week}"


def current_period(today: date | None = None) -> str:
    """Label for the period containing *today* (defaults to the local date)."""
    return period_label(today or date.today())


def validate_period(label: str) -> str:
    """Strip and validate a period label. Raises ValueError if malformed."""
    label = label.strip()
    m = PERIOD_RE.match(label)
    if not m or not 1 <= int(m.group(2)) <= 53:
        raise ValueError(f"Invalid period label {label!r} (expected e.g. 2026-W42)")
    return label

"""Normalization functions for registration and wallet export ingestion.

All text helpers accept str | None.  `trim`, `normalize_space` and
`normalize_email` return None for blank input; `normalize_name` always
returns a string because it feeds the matcher's lookup keys.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timezone
from pathlib import Path

_DEFAULT_GROUP_LABEL_PATTERN = r"^[a-z0-9]+-([^-.]+)"
_UNKNOWN_GROUP = "UNKNOWN"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_name  (canonical comparison form)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str:
    """Reduce a display name to lowercase Latin letters and single spaces.

    Lowercase, collapse whitespace, trim, then drop every character that is
    not a-z or a space.  Accented letters are removed, not transliterated,
    so "José" becomes "jos".  None / blank → "".

    Spaces left doubled or dangling by the removal step ("Jane - Doe",
    "Jane Doe 2") are collapsed again so the result only ever holds single
    interior spaces.
    """
    if not value:
        return ""
    v = value.lower()
    v = re.sub(r"\s+", " ", v).strip()
    v = re.sub(r"[^a-z ]", "", v)
    return re.sub(r" +", " ", v).strip()


# ---------------------------------------------------------------------------
# Group labels from registration export file names
# ---------------------------------------------------------------------------

def extract_group_label(
    file_name: str | Path,
    pattern: str = _DEFAULT_GROUP_LABEL_PATTERN,
) -> str:
    """Return the upper-cased group label embedded in an export file name.

    "luma-unilag-day1.csv" → "UNILAG".  Returns "UNKNOWN" when the pattern
    does not match.
    """
    name = Path(file_name).name
    m = re.search(pattern, name, re.IGNORECASE)
    if not m or not m.group(1):
        return _UNKNOWN_GROUP
    return m.group(1).upper()


# ---------------------------------------------------------------------------
# Tour window dates
# ---------------------------------------------------------------------------

def parse_window_date(value: str | None, end_of_day: bool = False) -> datetime | None:
    """Parse 'YYYY-MM-DD' or an ISO-8601 timestamp into an aware UTC datetime.

    A bare date resolves to 00:00:00 UTC, or 23:59:59 UTC when end_of_day is
    set so that an inclusive window covers the whole final day.  Naive
    timestamps are taken as UTC.  Unparseable input → None.
    """
    v = trim(value)
    if v is None:
        return None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", v):
        try:
            d = datetime.strptime(v, "%Y-%m-%d").date()
        except ValueError:
            return None
        t = time(23, 59, 59) if end_of_day else time(0, 0, 0)
        return datetime.combine(d, t, tzinfo=timezone.utc)
    try:
        ts = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

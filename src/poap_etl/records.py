"""poap_etl.records

Delimited-text record parsing and report serialization.

Parsing is purely structural: the header row defines the keys, each data
row is zipped positionally against it, and missing trailing fields become
"".  Field content is never validated here.
"""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Any, Iterable


def _normalize_headers(header: list[str]) -> list[str]:
    """Return header keys whitespace-stripped."""
    return [k.strip() for k in header]


def parse_records(text: str, delimiter: str = ",") -> list[dict[str, str]]:
    """Parse delimited text into an ordered list of field-keyed rows.

    Quoted fields may contain the delimiter (and line breaks); a doubled
    quote inside a quoted field is a literal quote.  Blank lines are
    skipped and fields beyond the header width are dropped.

    Raises:
        TypeError: If text is not a str.
    """
    if not isinstance(text, str):
        raise TypeError(f"parse_records expects str, got {type(text).__name__}")
    if not text.strip():
        return []

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    header: list[str] | None = None
    rows: list[dict[str, str]] = []
    for values in reader:
        if not values or (len(values) == 1 and not values[0].strip()):
            continue
        if header is None:
            header = _normalize_headers(values)
            continue
        padded = values + [""] * (len(header) - len(values))
        rows.append(dict(zip(header, padded)))
    return rows


def to_delimited(
    rows: Iterable[dict[str, Any]],
    columns: list[str],
    delimiter: str = ",",
) -> str:
    """Serialize rows to delimited text with a header line.

    Values containing the delimiter, a quote or a line break are quoted and
    inner quotes doubled.  None serializes as "".  No rows → "".
    """
    rows = list(rows)
    if not rows:
        return ""
    buf = io.StringIO()
    writer = csv.writer(
        buf, delimiter=delimiter, quoting=csv.QUOTE_MINIMAL, lineterminator="\n"
    )
    writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(col) is None else str(row.get(col)) for col in columns])
    return buf.getvalue().rstrip("\n")


def read_records(path: Path, delimiter: str = ",") -> list[dict[str, str]]:
    """Read and parse a UTF-8 export file (a leading BOM is tolerated)."""
    return parse_records(path.read_text(encoding="utf-8-sig"), delimiter=delimiter)


def write_records(path: Path, rows: Iterable[dict[str, Any]], columns: list[str]) -> Path:
    """Write rows as a CSV report, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_delimited(rows, columns), encoding="utf-8")
    return path

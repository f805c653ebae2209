"""poap_etl.shared

Shared persistence used by every mode: the participants, builders and
classification-results documents, the consolidation review CSVs, the
validation report JSON, and the per-run report.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from poap_etl.identity_match import MissingWallet, Participant, ReviewCandidate
from poap_etl.records import write_records

DEFAULT_DATA_DIR = Path("./data")
DEFAULT_REPORTS_DIR = Path("./artifacts/consolidation")
DEFAULT_RESULTS_DIR = Path("./artifacts/results")
RUN_REPORTS_DIR = Path("./artifacts/reports")

PARTICIPANTS_FILE = "participants.json"
BUILDERS_FILE = "builders.json"
VALIDATION_REPORT_FILE = "validation-report.json"

MATCHED_COLUMNS = [
    "name", "wallet", "email", "groupLabel", "groupLabels",
    "sessionsAttended", "github", "matchMethod", "confidence",
]
REVIEW_COLUMNS = [
    "sourceName", "sourceEmail", "suggestedMatch", "suggestedWallet",
    "confidence", "groupLabels",
]
MISSING_COLUMNS = ["name", "email", "groupLabels", "sessionsAttended"]
NO_EMAIL_COLUMNS = ["name", "wallet", "github", "programId"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    """Aggregate counters for one CLI run; stage counters nest as dicts."""

    participants_loaded: int = 0
    participants_written: int = 0
    duplicates_dropped: int = 0
    validation_errors: int = 0
    validation_warnings: int = 0
    builders: int = 0
    non_builders: int = 0
    not_processed: int = 0
    stages: dict[str, dict[str, Any]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "participants_loaded": self.participants_loaded,
            "participants_written": self.participants_written,
            "duplicates_dropped": self.duplicates_dropped,
            "validation_errors": self.validation_errors,
            "validation_warnings": self.validation_warnings,
            "builders": self.builders,
            "non_builders": self.non_builders,
            "not_processed": self.not_processed,
            "stages": self.stages,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Participants document
# ---------------------------------------------------------------------------

class ParticipantsDocumentError(ValueError):
    """Raised when a participants document is not {"participants": [...]}."""


def load_participants(path: Path) -> list[Participant]:
    """Read the participants document.

    Raises:
        FileNotFoundError: If path does not exist.
        ParticipantsDocumentError: If the JSON has no participants list.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    rows = data.get("participants") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise ParticipantsDocumentError(
            f"{path}: expected an object with a 'participants' list"
        )
    return [Participant.from_document(r) for r in rows if isinstance(r, dict)]


def save_participants(path: Path, participants: Iterable[Participant]) -> Path:
    return _write_json(path, {"participants": [p.to_document() for p in participants]})


# ---------------------------------------------------------------------------
# Builders + classification results
# ---------------------------------------------------------------------------

def save_builders(
    path: Path,
    builders: list[dict[str, Any]],
    window: dict[str, str],
    verified_at: str | None = None,
) -> Path:
    return _write_json(path, {
        "builders": builders,
        "verifiedAt": verified_at or utc_now(),
        "window": window,
    })


def load_builders(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    return list(data.get("builders") or [])


def save_results(
    results_dir: Path,
    builders: list[dict[str, Any]],
    non_builders: list[dict[str, Any]],
    not_processed: list[dict[str, Any]],
    run_id: str,
) -> Path:
    """Write the full partition to {results_dir}/classification-{run_id}.json."""
    return _write_json(results_dir / f"classification-{run_id}.json", {
        "builders": builders,
        "nonBuilders": non_builders,
        "notProcessed": not_processed,
        "savedAt": utc_now(),
    })


def save_validation_report(path: Path, report: dict[str, Any]) -> Path:
    return _write_json(path, report)


# ---------------------------------------------------------------------------
# Consolidation CSV reports (written only when non-empty)
# ---------------------------------------------------------------------------

def _labels(labels: Iterable[str]) -> str:
    return ", ".join(labels)


def write_consolidation_reports(
    reports_dir: Path,
    matched: list[tuple[Participant, tuple[str, ...]]],
    review: list[ReviewCandidate],
    missing: list[MissingWallet],
    walk_ins: list[Participant],
) -> list[Path]:
    """Write matched / review-needed / missing-wallets / no-email CSVs.

    `matched` pairs each participant with every group label its
    registration carried.
    """
    written: list[Path] = []
    if matched:
        written.append(write_records(reports_dir / "matched.csv", [
            {
                "name": p.name,
                "wallet": p.wallet,
                "email": p.email,
                "groupLabel": p.group_label,
                "groupLabels": _labels(labels),
                "sessionsAttended": p.sessions_attended,
                "github": p.github,
                "matchMethod": p.match_method,
                "confidence": f"{p.match_confidence:.2f}",
            }
            for p, labels in matched
        ], MATCHED_COLUMNS))
    if review:
        written.append(write_records(reports_dir / "review-needed.csv", [
            {
                "sourceName": r.source_name,
                "sourceEmail": r.source_email,
                "suggestedMatch": r.suggested_wallet_name,
                "suggestedWallet": r.suggested_wallet,
                "confidence": f"{r.confidence:.2f}",
                "groupLabels": _labels(r.group_labels),
            }
            for r in review
        ], REVIEW_COLUMNS))
    if missing:
        written.append(write_records(reports_dir / "missing-wallets.csv", [
            {
                "name": m.name,
                "email": m.email,
                "groupLabels": _labels(m.group_labels),
                "sessionsAttended": m.sessions_attended,
            }
            for m in missing
        ], MISSING_COLUMNS))
    if walk_ins:
        written.append(write_records(reports_dir / "no-email.csv", [
            {"name": w.name, "wallet": w.wallet, "github": w.github, "programId": w.program_id}
            for w in walk_ins
        ], NO_EMAIL_COLUMNS))
    return written


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    reports_root: Path = RUN_REPORTS_DIR,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    return _write_json(reports_root / f"{run_id}.json", report)

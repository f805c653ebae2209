"""poap_etl.validation

Structural validation of consolidated participant records.

Purely a reporting layer: every record is examined, nothing is raised for
bad data, and records are never mutated.  The orchestrator decides what a
non-empty error list means (halt) versus warnings (proceed).

Error class (gating):   missing / malformed wallet, malformed email
Warning class:          missing email (no notification), missing name
Duplicate clusters:     same wallet after trim + lowercase, reported with
                        every member's 1-based row and display name
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from poap_etl.identity_match import Participant

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_ADDRESS_LEN = 32
MAX_ADDRESS_LEN = 44

# Base-58 alphabet: no 0, O, I, l
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

INVALID_FORMAT = "invalid_format"
MISSING = "missing"

NO_PARTICIPANTS_ERROR = "No participants found or invalid data format"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckResult:
    valid: bool
    error: str | None = None
    code: str | None = None
    missing: bool = False


@dataclass(frozen=True)
class ValidationIssue:
    row_index: int
    field: str
    message: str
    severity: str  # 'error' | 'warning'


@dataclass(frozen=True)
class DuplicateCluster:
    wallet: str
    rows: tuple[int, ...]
    names: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"wallet": self.wallet, "rows": list(self.rows), "names": list(self.names)}


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    issues: list[ValidationIssue] = field(default_factory=list)
    duplicates: list[DuplicateCluster] = field(default_factory=list)
    total: int = 0
    valid: int = 0
    invalid: int = 0
    with_email: int = 0
    without_email: int = 0

    @property
    def passed(self) -> bool:
        return not self.errors and not self.duplicates

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "with_email": self.with_email,
            "without_email": self.without_email,
            "duplicate_count": len(self.duplicates),
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duplicates": [d.to_dict() for d in self.duplicates],
            "summary": self.summary,
        }


# ---------------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------------

def validate_address(address: Any) -> CheckResult:
    """Check a base-58 wallet address: text, no surrounding space, 32-44 chars."""
    if address is None or (isinstance(address, str) and address == ""):
        return CheckResult(False, "Missing wallet address", MISSING, missing=True)
    if not isinstance(address, str):
        return CheckResult(False, "Wallet address is not text", INVALID_FORMAT)
    if address.strip() != address:
        return CheckResult(False, "Wallet address has leading/trailing whitespace", INVALID_FORMAT)
    if not (MIN_ADDRESS_LEN <= len(address) <= MAX_ADDRESS_LEN):
        return CheckResult(
            False,
            f"Invalid length: {len(address)} chars "
            f"(expected {MIN_ADDRESS_LEN}-{MAX_ADDRESS_LEN})",
            INVALID_FORMAT,
        )
    if not _BASE58_RE.match(address):
        return CheckResult(False, "Contains invalid characters (not valid base58)", INVALID_FORMAT)
    return CheckResult(True)


def validate_email(email: Any) -> CheckResult:
    """Empty email is valid (no notification); otherwise must look like local@domain.tld."""
    if email is None or (isinstance(email, str) and not email.strip()):
        return CheckResult(True, missing=True)
    if not isinstance(email, str) or not _EMAIL_RE.match(email.strip()):
        return CheckResult(False, "Invalid email format", INVALID_FORMAT)
    return CheckResult(True)


# ---------------------------------------------------------------------------
# Per-record validation
# ---------------------------------------------------------------------------

def validate_participant(p: Participant, index: int) -> list[ValidationIssue]:
    """Return every issue for one record; index is 0-based, messages are 1-based."""
    row = index + 1
    issues: list[ValidationIssue] = []

    addr = validate_address(p.wallet)
    if not addr.valid:
        msg = f"Row {row}: {addr.error}"
        if not addr.missing:
            msg += f' (wallet: "{p.wallet}")'
        issues.append(ValidationIssue(row, "wallet", msg, "error"))

    mail = validate_email(p.email)
    if not mail.valid:
        issues.append(ValidationIssue(
            row, "email", f'Row {row}: {mail.error} (email: "{p.email}")', "error",
        ))
    elif mail.missing:
        issues.append(ValidationIssue(
            row, "email", f"Row {row}: No email address - will not receive notification",
            "warning",
        ))

    if not (p.name or "").strip():
        issues.append(ValidationIssue(
            row, "name", f"Row {row}: No name provided (wallet: {(p.wallet or '')[:8]}...)",
            "warning",
        ))
    return issues


def find_duplicates(participants: Iterable[Participant]) -> list[DuplicateCluster]:
    """Group records by trimmed, lower-cased wallet; return groups of size > 1."""
    groups: dict[str, dict[str, Any]] = {}
    for idx, p in enumerate(participants):
        if not p.wallet:
            continue
        key = p.wallet.strip().lower()
        g = groups.setdefault(key, {"wallet": p.wallet, "rows": [], "names": []})
        g["rows"].append(idx + 1)
        g["names"].append(p.name or "Unknown")
    return [
        DuplicateCluster(g["wallet"], tuple(g["rows"]), tuple(g["names"]))
        for g in groups.values()
        if len(g["rows"]) > 1
    ]


def validate_all(participants: list[Participant]) -> ValidationReport:
    """Validate every record and collect errors, warnings, duplicates and counts."""
    report = ValidationReport(total=len(participants))
    if not participants:
        report.errors.append(NO_PARTICIPANTS_ERROR)
        return report

    for idx, p in enumerate(participants):
        issues = validate_participant(p, idx)
        report.issues.extend(issues)
        if any(i.severity == "error" for i in issues):
            report.invalid += 1
        else:
            report.valid += 1
        for i in issues:
            (report.errors if i.severity == "error" else report.warnings).append(i.message)
        if (p.email or "").strip():
            report.with_email += 1
        else:
            report.without_email += 1

    report.duplicates = find_duplicates(participants)
    return report


# ---------------------------------------------------------------------------
# Auto-fix helpers
# ---------------------------------------------------------------------------

def clean_participants(participants: Iterable[Participant]) -> list[Participant]:
    """Return copies with whitespace trimmed from every text field."""
    return [
        replace(
            p,
            wallet=(p.wallet or "").strip(),
            name=(p.name or "").strip(),
            email=(p.email or "").strip(),
            group_label=(p.group_label or "").strip(),
        )
        for p in participants
    ]


def remove_duplicates(participants: Iterable[Participant]) -> list[Participant]:
    """Keep the first record per normalized wallet.

    Records with no wallet are kept so the re-validation still reports them.
    """
    seen: set[str] = set()
    kept: list[Participant] = []
    for p in participants:
        if not p.wallet:
            kept.append(p)
            continue
        key = p.wallet.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        kept.append(p)
    return kept

"""poap_etl.identity_match

Registration ↔ wallet identity resolution.

Consumes:
  - one wallet export (name, wallet address, optional program id / github)
  - one or more registration exports, each tagged with a group label

Produces a MatchResult with four collections:
  - matched          — registrations resolved to a wallet (exact or fuzzy)
  - review_needed    — best candidate fell in the review band; no wallet consumed
  - missing_wallets  — registrations with no usable candidate
  - walk_ins         — wallets never consumed by a registration

Matching order per registration (registrations in first-encounter order):
  1. Exact lookup of the canonical name against the first-seen wallet with
     that name, accepted only while that wallet is unconsumed.
  2. Otherwise score every unconsumed wallet and keep the single best
     (ties keep wallet-table order).
  3. Route the best score through the rule thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from poap_etl.match_rules import MatchRules, match_band
from poap_etl.normalize import normalize_email, normalize_name, normalize_space, trim
from poap_etl.similarity import similarity

# ---------------------------------------------------------------------------
# Column aliases (first non-empty wins)
# ---------------------------------------------------------------------------

WALLET_NAME_COLS = ("Full Name", "name", "Name")
WALLET_ADDRESS_COLS = ("Devnet Wallet Address", "Devnet wallet address", "wallet", "Wallet")
WALLET_PROGRAM_ID_COLS = ("Program ID", "program_id")
WALLET_GITHUB_COLS = ("Github profile", "github", "GitHub")

REG_EMAIL_COLS = ("email", "Email")
REG_NAME_COLS = ("name", "Name")
REG_FIRST_NAME_COLS = ("first_name", "First Name")
REG_LAST_NAME_COLS = ("last_name", "Last Name")
REG_CHECKED_IN_COLS = ("checked_in_at", "Checked In")
REG_STATUS_COLS = ("approval_status", "Status")

_NIL_WALLET = "nil"


def _first(row: dict[str, str], cols: tuple[str, ...]) -> str:
    for col in cols:
        v = trim(row.get(col))
        if v:
            return v
    return ""


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WalletRecord:
    name: str
    normalized_name: str
    wallet: str
    program_id: str = ""
    github: str = ""


@dataclass
class Registration:
    email: str
    name: str
    normalized_name: str
    checked_in: bool = False
    approval_status: str = ""
    group_labels: list[str] = field(default_factory=list)
    sessions_attended: int = 0


@dataclass(frozen=True)
class Participant:
    wallet: str
    name: str
    email: str
    group_label: str
    match_method: str
    match_confidence: float
    github: str = ""
    program_id: str = ""
    sessions_attended: int = 0

    def to_document(self) -> dict[str, Any]:
        """Flat mapping written to the participants document."""
        return {
            "name": self.name,
            "wallet": self.wallet,
            "email": self.email,
            "groupLabel": self.group_label,
            "matchMethod": self.match_method,
            "matchConfidence": self.match_confidence,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Participant":
        """Rebuild a participant from a (possibly hand-edited) document row."""
        confidence = doc.get("matchConfidence", 1.0)
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = 1.0
        return cls(
            wallet=doc.get("wallet") or "",
            name=doc.get("name") or "",
            email=doc.get("email") or "",
            group_label=doc.get("groupLabel") or doc.get("campus") or "",
            match_method=doc.get("matchMethod") or "exact",
            match_confidence=confidence,
        )


@dataclass(frozen=True)
class ReviewCandidate:
    source_name: str
    source_email: str
    suggested_wallet_name: str
    suggested_wallet: str
    confidence: float
    group_labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class MissingWallet:
    name: str
    email: str
    group_labels: tuple[str, ...] = ()
    sessions_attended: int = 0


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class MatchCounters:
    wallet_rows_read: int = 0
    wallet_rows_skipped: int = 0
    registration_rows_read: int = 0
    registration_rows_skipped: int = 0
    unique_registrations: int = 0
    matched_exact: int = 0
    matched_fuzzy: int = 0
    review_needed: int = 0
    missing_wallets: int = 0
    walk_ins: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_rows_read": self.wallet_rows_read,
            "wallet_rows_skipped": self.wallet_rows_skipped,
            "registration_rows_read": self.registration_rows_read,
            "registration_rows_skipped": self.registration_rows_skipped,
            "unique_registrations": self.unique_registrations,
            "matched_exact": self.matched_exact,
            "matched_fuzzy": self.matched_fuzzy,
            "review_needed": self.review_needed,
            "missing_wallets": self.missing_wallets,
            "walk_ins": self.walk_ins,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_wallet_records(
    rows: Iterable[dict[str, str]],
    counters: MatchCounters | None = None,
) -> list[WalletRecord]:
    """Build WalletRecords from wallet-export rows, in table order.

    Rows lacking a name or a wallet, or whose wallet is the literal 'nil',
    are skipped.
    """
    ctrs = counters or MatchCounters()
    records: list[WalletRecord] = []
    for idx, row in enumerate(rows):
        ctrs.wallet_rows_read += 1
        name = _first(row, WALLET_NAME_COLS)
        wallet = _first(row, WALLET_ADDRESS_COLS)
        if not name or not wallet or wallet.lower() == _NIL_WALLET:
            ctrs.wallet_rows_skipped += 1
            ctrs.warnings.append(f"wallet row {idx + 1}: skipped (missing name or wallet)")
            continue
        records.append(WalletRecord(
            name=normalize_space(name) or name,
            normalized_name=normalize_name(name),
            wallet=wallet,
            program_id=_first(row, WALLET_PROGRAM_ID_COLS),
            github=_first(row, WALLET_GITHUB_COLS),
        ))
    return records


def _attended(row: dict[str, str]) -> tuple[bool, str]:
    checked_in = bool(_first(row, REG_CHECKED_IN_COLS))
    status = _first(row, REG_STATUS_COLS)
    return checked_in or status.lower() == "approved", status


def merge_registrations(
    batches: Iterable[tuple[str, Iterable[dict[str, str]]]],
    counters: MatchCounters | None = None,
) -> list[Registration]:
    """Merge registration rows from ordered (group_label, rows) batches by email.

    The first row seen for an email fixes its display name; later rows add
    their group label (once) and bump sessions_attended when they count as
    attended (checked in, or approval status 'approved').
    """
    ctrs = counters or MatchCounters()
    by_email: dict[str, Registration] = {}
    for group_label, rows in batches:
        for row in rows:
            ctrs.registration_rows_read += 1
            email = normalize_email(_first(row, REG_EMAIL_COLS))
            if not email:
                ctrs.registration_rows_skipped += 1
                continue

            attended, status = _attended(row)
            existing = by_email.get(email)
            if existing is not None:
                if group_label not in existing.group_labels:
                    existing.group_labels.append(group_label)
                if attended:
                    existing.sessions_attended += 1
                existing.checked_in = existing.checked_in or bool(
                    _first(row, REG_CHECKED_IN_COLS)
                )
                continue

            full_name = _first(row, REG_NAME_COLS)
            if not full_name:
                first = _first(row, REG_FIRST_NAME_COLS)
                last = _first(row, REG_LAST_NAME_COLS)
                full_name = " ".join(p for p in (first, last) if p)
            full_name = normalize_space(full_name) or ""
            by_email[email] = Registration(
                email=email,
                name=full_name,
                normalized_name=normalize_name(full_name),
                checked_in=bool(_first(row, REG_CHECKED_IN_COLS)),
                approval_status=status,
                group_labels=[group_label],
                sessions_attended=1 if attended else 0,
            )
    ctrs.unique_registrations = len(by_email)
    return list(by_email.values())


# ---------------------------------------------------------------------------
# Match context + result
# ---------------------------------------------------------------------------

@dataclass
class MatchContext:
    """Per-run matcher state; built fresh for every match_identities call."""

    wallets: list[WalletRecord]
    by_name: dict[str, WalletRecord] = field(default_factory=dict)
    consumed: set[str] = field(default_factory=set)

    @classmethod
    def build(cls, wallets: list[WalletRecord]) -> "MatchContext":
        ctx = cls(wallets=list(wallets))
        for w in ctx.wallets:
            if not w.normalized_name:
                continue
            # Name collisions keep the first-seen wallet
            ctx.by_name.setdefault(w.normalized_name, w)
        return ctx

    def is_consumed(self, wallet: WalletRecord) -> bool:
        return wallet.wallet in self.consumed

    def consume(self, wallet: WalletRecord) -> None:
        self.consumed.add(wallet.wallet)

    def best_unconsumed(self, normalized_name: str) -> tuple[WalletRecord | None, float]:
        best: WalletRecord | None = None
        best_score = -1.0
        for w in self.wallets:
            if self.is_consumed(w) or not w.normalized_name:
                continue
            score = similarity(normalized_name, w.normalized_name)
            if score > best_score:
                best, best_score = w, score
        return best, max(best_score, 0.0)


@dataclass
class MatchResult:
    matched: list[Participant] = field(default_factory=list)
    review_needed: list[ReviewCandidate] = field(default_factory=list)
    missing_wallets: list[MissingWallet] = field(default_factory=list)
    walk_ins: list[Participant] = field(default_factory=list)

    @property
    def participants(self) -> list[Participant]:
        return self.matched + self.walk_ins


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _participant(reg: Registration, w: WalletRecord, method: str, confidence: float) -> Participant:
    return Participant(
        wallet=w.wallet,
        name=reg.name or w.name,
        email=reg.email,
        group_label=reg.group_labels[0] if reg.group_labels else "",
        match_method=method,
        match_confidence=confidence,
        github=w.github,
        program_id=w.program_id,
        sessions_attended=reg.sessions_attended,
    )


def _missing(reg: Registration) -> MissingWallet:
    return MissingWallet(
        name=reg.name,
        email=reg.email,
        group_labels=tuple(reg.group_labels),
        sessions_attended=reg.sessions_attended,
    )


def match_identities(
    registrations: list[Registration],
    wallets: list[WalletRecord],
    rules: MatchRules | None = None,
    counters: MatchCounters | None = None,
) -> MatchResult:
    """Resolve each registration to at most one wallet; see module docstring.

    Each wallet address is consumed by at most one registration.  Never
    raises for data problems.
    """
    rules = rules or MatchRules.defaults()
    ctrs = counters or MatchCounters()
    ctx = MatchContext.build(wallets)
    result = MatchResult()

    for reg in registrations:
        if not reg.normalized_name:
            # No letters left to compare (blank or non-Latin name)
            result.missing_wallets.append(_missing(reg))
            ctrs.missing_wallets += 1
            continue

        exact = ctx.by_name.get(reg.normalized_name)
        if exact is not None and not ctx.is_consumed(exact):
            result.matched.append(_participant(reg, exact, "exact", 1.0))
            ctx.consume(exact)
            ctrs.matched_exact += 1
            continue

        best, score = ctx.best_unconsumed(reg.normalized_name)
        band = match_band(rules, score) if best is not None else "missing"

        if band == "fuzzy":
            result.matched.append(_participant(reg, best, "fuzzy", score))
            ctx.consume(best)
            ctrs.matched_fuzzy += 1
        elif band == "review":
            result.review_needed.append(ReviewCandidate(
                source_name=reg.name,
                source_email=reg.email,
                suggested_wallet_name=best.name,
                suggested_wallet=best.wallet,
                confidence=score,
                group_labels=tuple(reg.group_labels),
            ))
            ctrs.review_needed += 1
        else:
            result.missing_wallets.append(_missing(reg))
            ctrs.missing_wallets += 1

    for w in ctx.wallets:
        if ctx.is_consumed(w):
            continue
        result.walk_ins.append(Participant(
            wallet=w.wallet,
            name=w.name,
            email="",
            group_label=rules.walk_in_label,
            match_method="exact",
            match_confidence=1.0,
            github=w.github,
            program_id=w.program_id,
        ))
        # Duplicate wallet rows surface only once as a walk-in
        ctx.consume(w)
        ctrs.walk_ins += 1

    return result

"""poap_etl.pipeline

Stage orchestration: consolidate → validate (gate) → classify → partition.

Stages:
  consolidate — read the wallet export and registration exports, match
                identities, write the review CSVs and the participants
                document (duplicate addresses dropped, first kept)
  validate    — structural checks; with fix=True trims whitespace and
                removes duplicate wallets, then re-validates
  classify    — sequential, paced ledger lookups partitioning participants
                into builders / non-builders / not-processed

The validation gate halts the full pipeline when errors or duplicate
clusters remain: nothing is classified and the complete report is returned.
Re-running on unchanged inputs yields identical participant lists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from poap_etl.activity import (
    ClassificationResult,
    Pacer,
    ProgressCallback,
    TourWindow,
    classify_participants,
)
from poap_etl.identity_match import (
    MatchCounters,
    MatchResult,
    Participant,
    load_wallet_records,
    match_identities,
    merge_registrations,
)
from poap_etl.ledger import LedgerQuery
from poap_etl.match_rules import MatchRules
from poap_etl.normalize import extract_group_label
from poap_etl.records import read_records
from poap_etl.shared import (
    BUILDERS_FILE,
    DEFAULT_DATA_DIR,
    DEFAULT_REPORTS_DIR,
    PARTICIPANTS_FILE,
    save_builders,
    save_participants,
    save_results,
    write_consolidation_reports,
)
from poap_etl.validation import (
    ValidationReport,
    clean_participants,
    remove_duplicates,
    validate_all,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InputDiscoveryError(FileNotFoundError):
    """Raised when the raw-data directory lacks a wallet or registration export."""


# ---------------------------------------------------------------------------
# Input discovery
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DiscoveredInputs:
    wallet_path: Path
    registration_paths: list[Path]


def discover_inputs(raw_dir: Path, rules: MatchRules | None = None) -> DiscoveredInputs:
    """Find the wallet export and registration exports by configured globs.

    Registration files are returned sorted by name so group-label order (and
    therefore first-encounter order) is stable between runs.
    """
    rules = rules or MatchRules.defaults()
    if not raw_dir.is_dir():
        raise InputDiscoveryError(f"raw data directory not found: {raw_dir}")

    wallets = sorted(raw_dir.glob(rules.wallet_glob))
    if not wallets:
        raise InputDiscoveryError(
            f"no wallet export matching '{rules.wallet_glob}' in {raw_dir}"
        )
    if len(wallets) > 1:
        log.warning("multiple wallet exports found; using %s", wallets[0].name)

    registrations = sorted(
        p for p in raw_dir.glob(rules.registration_glob) if p not in wallets
    )
    if not registrations:
        raise InputDiscoveryError(
            f"no registration exports matching '{rules.registration_glob}' in {raw_dir}"
        )
    return DiscoveredInputs(wallet_path=wallets[0], registration_paths=registrations)


# ---------------------------------------------------------------------------
# Consolidate
# ---------------------------------------------------------------------------

@dataclass
class ConsolidationResult:
    match: MatchResult
    participants: list[Participant]
    counters: MatchCounters
    duplicates_dropped: int = 0
    written: list[Path] = field(default_factory=list)


def run_consolidate(
    wallet_path: Path,
    registration_paths: list[Path],
    rules: MatchRules | None = None,
    reports_dir: Path = DEFAULT_REPORTS_DIR,
    participants_path: Path = DEFAULT_DATA_DIR / PARTICIPANTS_FILE,
    dry_run: bool = False,
) -> ConsolidationResult:
    """Match registrations to wallets and persist the consolidated outputs.

    With dry_run=True nothing is written; the result still carries every
    collection and counter.
    """
    rules = rules or MatchRules.defaults()
    ctrs = MatchCounters()

    wallets = load_wallet_records(read_records(wallet_path), ctrs)
    batches = []
    for path in registration_paths:
        label = extract_group_label(path, rules.group_label_pattern)
        batches.append((label, read_records(path)))
        log.debug("registration export %s → group %s", path.name, label)
    registrations = merge_registrations(batches, ctrs)

    match = match_identities(registrations, wallets, rules, ctrs)
    combined = match.participants
    participants = remove_duplicates(combined)
    dropped = len(combined) - len(participants)
    if dropped:
        ctrs.warnings.append(f"dropped {dropped} participant(s) with duplicate wallet addresses")
        log.warning("dropped %d duplicate wallet address(es) before writing", dropped)

    result = ConsolidationResult(
        match=match, participants=participants, counters=ctrs, duplicates_dropped=dropped,
    )
    if dry_run:
        return result

    labels_by_email = {r.email: tuple(r.group_labels) for r in registrations}
    result.written = write_consolidation_reports(
        reports_dir,
        [(p, labels_by_email.get(p.email, (p.group_label,))) for p in match.matched],
        match.review_needed,
        match.missing_wallets,
        match.walk_ins,
    )
    result.written.append(save_participants(participants_path, participants))
    return result


def build_consolidation_report(result: ConsolidationResult, dry_run: bool = False) -> str:
    ctrs = result.counters
    lines = [
        "=" * 60,
        "Consolidation Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  wallet rows read:         {ctrs.wallet_rows_read}",
        f"  wallet rows skipped:      {ctrs.wallet_rows_skipped}",
        f"  registration rows read:   {ctrs.registration_rows_read}",
        f"  registration rows skipped: {ctrs.registration_rows_skipped}",
        f"  unique registrations:     {ctrs.unique_registrations}",
        f"    → matched (exact):      {ctrs.matched_exact}",
        f"    → matched (fuzzy):      {ctrs.matched_fuzzy}",
        f"    → review needed:        {ctrs.review_needed}",
        f"    → missing wallet:       {ctrs.missing_wallets}",
        f"  walk-ins (no email):      {ctrs.walk_ins}",
        f"  duplicates dropped:       {result.duplicates_dropped}",
        f"  participants:             {len(result.participants)}",
    ]
    for path in result.written:
        lines.append(f"  wrote {path}")
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

@dataclass
class ValidationOutcome:
    participants: list[Participant]
    report: ValidationReport
    fixed: bool = False
    duplicates_removed: int = 0
    whitespace_fixed: int = 0


def run_validate(participants: list[Participant], fix: bool = False) -> ValidationOutcome:
    """Validate participants; with fix=True trim and dedupe first.

    Fixing never removes a record silently: the outcome reports how many
    duplicates were removed and the re-validation still lists every
    remaining error.
    """
    if not fix:
        return ValidationOutcome(participants=list(participants), report=validate_all(participants))

    cleaned = clean_participants(participants)
    whitespace_fixed = sum(1 for a, b in zip(participants, cleaned) if a != b)
    deduped = remove_duplicates(cleaned)
    removed = len(cleaned) - len(deduped)
    if whitespace_fixed or removed:
        log.info("auto-fix: trimmed %d record(s), removed %d duplicate(s)", whitespace_fixed, removed)
    return ValidationOutcome(
        participants=deduped,
        report=validate_all(deduped),
        fixed=bool(whitespace_fixed or removed),
        duplicates_removed=removed,
        whitespace_fixed=whitespace_fixed,
    )


def build_validation_report(outcome: ValidationOutcome, fix: bool = False) -> str:
    """Itemized validation report: summary, every error, duplicates, warnings."""
    report = outcome.report
    s = report.summary
    lines = [
        "=" * 60,
        "Validation Report",
        f"  fix: {fix}",
        "=" * 60,
        f"  total entries:      {s['total']}",
        f"  valid entries:      {s['valid']}",
        f"  invalid entries:    {s['invalid']}",
        f"  duplicate wallets:  {s['duplicate_count']}",
        f"  with email:         {s['with_email']} (will be notified)",
        f"  without email:      {s['without_email']} (no notification)",
    ]
    if fix:
        lines.append(f"  whitespace fixed:   {outcome.whitespace_fixed}")
        lines.append(f"  duplicates removed: {outcome.duplicates_removed}")
    if report.errors:
        lines.append(f"\nErrors ({len(report.errors)}):")
        lines.extend(f"  {e}" for e in report.errors)
    if report.duplicates:
        lines.append(f"\nDuplicates ({len(report.duplicates)}):")
        for dup in report.duplicates:
            lines.append(f"  wallet {dup.wallet}")
            lines.append(f"    rows:  {', '.join(str(r) for r in dup.rows)}")
            lines.append(f"    names: {', '.join(dup.names)}")
        if not fix:
            lines.append("  (re-run with --fix to remove duplicates)")
    if report.warnings:
        lines.append(f"\nWarnings ({len(report.warnings)}):")
        for w in report.warnings[:20]:
            lines.append(f"  {w}")
        if len(report.warnings) > 20:
            lines.append(f"  ... and {len(report.warnings) - 20} more")
    lines.append("=" * 60)
    lines.append("PASSED" if report.passed else "FAILED: fix errors before classifying")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Classify
# ---------------------------------------------------------------------------

def run_classify(
    participants: list[Participant],
    ledger: LedgerQuery,
    window: TourWindow,
    rules: MatchRules | None = None,
    pacer: Pacer | None = None,
    on_progress: ProgressCallback | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> ClassificationResult:
    rules = rules or MatchRules.defaults()
    return classify_participants(
        ledger,
        participants,
        window,
        lookback_limit=rules.lookback_limit,
        pacer=pacer or Pacer(delay=rules.request_delay_seconds),
        on_progress=on_progress,
        should_stop=should_stop,
    )


def persist_classification(
    result: ClassificationResult,
    window: TourWindow,
    data_dir: Path,
    results_dir: Path,
    run_id: str,
) -> list[Path]:
    """Write builders.json and the full classification-results document."""
    return [
        save_builders(data_dir / BUILDERS_FILE, result.builders, window.to_dict()),
        save_results(
            results_dir, result.builders, result.non_builders, result.not_processed, run_id,
        ),
    ]


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------

@dataclass
class PipelineResult:
    stage: str
    halted: bool
    consolidation: ConsolidationResult
    validation: ValidationOutcome
    classification: ClassificationResult | None = None


def run_pipeline(
    wallet_path: Path,
    registration_paths: list[Path],
    ledger: LedgerQuery,
    window: TourWindow,
    rules: MatchRules | None = None,
    reports_dir: Path = DEFAULT_REPORTS_DIR,
    participants_path: Path = DEFAULT_DATA_DIR / PARTICIPANTS_FILE,
    fix: bool = False,
    dry_run: bool = False,
    pacer: Pacer | None = None,
    on_progress: ProgressCallback | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> PipelineResult:
    """Run consolidate → validate → classify, halting at the validation gate.

    Persisting the classification is left to the caller (see
    persist_classification) so dry runs and tests stay side-effect free.
    """
    rules = rules or MatchRules.defaults()
    consolidation = run_consolidate(
        wallet_path, registration_paths, rules,
        reports_dir=reports_dir, participants_path=participants_path, dry_run=dry_run,
    )
    outcome = run_validate(consolidation.participants, fix=fix)
    if outcome.fixed and not dry_run:
        save_participants(participants_path, outcome.participants)

    if not outcome.report.passed:
        log.warning(
            "validation gate failed: %d error(s), %d duplicate cluster(s)",
            len(outcome.report.errors), len(outcome.report.duplicates),
        )
        return PipelineResult(
            stage="validate", halted=True, consolidation=consolidation, validation=outcome,
        )

    classification = run_classify(
        outcome.participants, ledger, window, rules,
        pacer=pacer, on_progress=on_progress, should_stop=should_stop,
    )
    return PipelineResult(
        stage="classify",
        halted=False,
        consolidation=consolidation,
        validation=outcome,
        classification=classification,
    )

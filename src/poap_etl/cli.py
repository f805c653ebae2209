"""poap_etl.cli

Unified command line for the participant reconciliation pipeline.

Modes:
  consolidate — raw exports → review CSVs + participants document
  validate    — check the participants document (optionally --fix)
  classify    — ledger lookups → builders document + results document
  run         — consolidate → validate (gate) → classify

Usage:
    poap-etl --mode consolidate --raw-dir ./raw-data
    poap-etl --mode validate --fix
    poap-etl --mode classify --network devnet --window-start 2025-01-01
    poap-etl --mode run --raw-dir ./raw-data --dry-run
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, NoReturn

import click

from poap_etl.activity import (
    ActivityResult,
    ClassificationResult,
    Pacer,
    TourWindow,
    build_classification_report,
)
from poap_etl.identity_match import Participant
from poap_etl.ledger import SolanaRpcClient, VALID_NETWORKS, resolve_rpc_url
from poap_etl.match_rules import MatchRules, MatchRulesError, load_match_rules
from poap_etl.pipeline import (
    InputDiscoveryError,
    ValidationOutcome,
    build_consolidation_report,
    build_validation_report,
    discover_inputs,
    persist_classification,
    run_classify,
    run_consolidate,
    run_pipeline,
    run_validate,
)
from poap_etl.shared import (
    DEFAULT_DATA_DIR,
    DEFAULT_REPORTS_DIR,
    DEFAULT_RESULTS_DIR,
    PARTICIPANTS_FILE,
    VALIDATION_REPORT_FILE,
    RunCounters,
    load_participants,
    save_participants,
    save_validation_report,
    write_run_report,
)

DEFAULT_WINDOW_START = "2025-01-01"
DEFAULT_WINDOW_END = "2025-12-31"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _InterruptFlag:
    """SIGINT handler that asks the classifier to stop between wallets."""

    def __init__(self) -> None:
        self.raised = False

    def __call__(self, signum, frame) -> None:
        self.raised = True

    def should_stop(self) -> bool:
        return self.raised


def _fatal(run_id: str, message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _load_rules(rules_file: str | None, run_id: str, **overrides) -> MatchRules:
    try:
        rules = load_match_rules(Path(rules_file) if rules_file else None)
        return rules.with_overrides(**overrides)
    except (MatchRulesError, FileNotFoundError) as exc:
        _fatal(run_id, f"invalid rules: {exc}")


def _resolve_inputs(
    raw_dir: str | None,
    wallets_path: str | None,
    registrations_paths: tuple[str, ...],
    rules: MatchRules,
    run_id: str,
) -> tuple[Path, list[Path]]:
    if wallets_path and registrations_paths:
        return Path(wallets_path), [Path(p) for p in registrations_paths]
    if wallets_path or registrations_paths:
        _fatal(run_id, "--wallets-path and --registrations-path must be given together")
    try:
        found = discover_inputs(Path(raw_dir or "./raw-data"), rules)
    except InputDiscoveryError as exc:
        _fatal(run_id, str(exc))
    return found.wallet_path, found.registration_paths


def _resolve_window(window_start: str | None, window_end: str | None, run_id: str) -> TourWindow:
    start = window_start or os.environ.get("TOUR_START_DATE") or DEFAULT_WINDOW_START
    end = window_end or os.environ.get("TOUR_END_DATE") or DEFAULT_WINDOW_END
    try:
        return TourWindow.from_dates(start, end)
    except ValueError as exc:
        _fatal(run_id, f"invalid tour window: {exc}")


def _build_ledger(network: str | None, rpc_url: str | None, run_id: str) -> SolanaRpcClient:
    network = network or os.environ.get("NETWORK") or "devnet"
    rpc_url = rpc_url or os.environ.get("RPC_URL")
    try:
        url = resolve_rpc_url(network, rpc_url)
    except ValueError as exc:
        _fatal(run_id, str(exc))
    click.echo(f"[{run_id}] Ledger endpoint: {url} (network={network})")
    return SolanaRpcClient(url)


def _load_participants_or_exit(path: Path, run_id: str) -> list[Participant]:
    try:
        return load_participants(path)
    except FileNotFoundError:
        _fatal(run_id, f"participants document not found: {path} (run --mode consolidate first)")
    except ValueError as exc:
        _fatal(run_id, f"could not parse {path}: {exc}")


def _progress_echo(run_id: str):
    def _echo(current: int, total: int, p: Participant, result: ActivityResult) -> None:
        if result.is_builder:
            status = f"builder ({result.transaction_count} tx)"
        elif result.error_tag:
            status = f"{result.error_tag}: {result.error}"
        else:
            status = "no activity in window"
        click.echo(f"[{run_id}] [{current}/{total}] {p.wallet[:8]}... {status}")
    return _echo


@contextmanager
def _stop_on_interrupt() -> Iterator[_InterruptFlag]:
    flag = _InterruptFlag()
    previous = signal.signal(signal.SIGINT, flag)
    try:
        yield flag
    finally:
        signal.signal(signal.SIGINT, previous)


def _record_classification(counters: RunCounters, result: ClassificationResult) -> None:
    counters.builders = len(result.builders)
    counters.non_builders = len(result.non_builders)
    counters.not_processed = len(result.not_processed)
    counters.stages["classify"] = result.counters.to_dict()


def _finish_classification(
    result: ClassificationResult,
    window: TourWindow,
    data_dir: Path,
    results_dir: Path,
    run_id: str,
    dry_run: bool,
) -> None:
    click.echo(build_classification_report(result.counters, window, dry_run=dry_run))
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] Builders and results not written.")
        return
    for path in persist_classification(result, window, data_dir, results_dir, run_id):
        click.echo(f"[{run_id}] Wrote {path}")


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="run",
    type=click.Choice(["consolidate", "validate", "classify", "run"]),
    show_default=True,
    help="Pipeline stage to run",
)
@click.option("--raw-dir", default=None, type=click.Path(), help="[consolidate|run] Directory holding the wallet and registration exports (default ./raw-data)")
@click.option("--wallets-path", default=None, type=click.Path(), help="[consolidate|run] Wallet export CSV (overrides discovery)")
@click.option("--registrations-path", multiple=True, type=click.Path(), help="[consolidate|run] Registration export CSV; repeatable")
@click.option("--data-dir", default=str(DEFAULT_DATA_DIR), type=click.Path(), show_default=True, help="Directory for participants.json and builders.json")
@click.option("--reports-dir", default=str(DEFAULT_REPORTS_DIR), type=click.Path(), show_default=True, help="Directory for consolidation CSVs and the validation report")
@click.option("--results-dir", default=str(DEFAULT_RESULTS_DIR), type=click.Path(), show_default=True, help="Directory for classification result documents")
@click.option("--rules-file", default=None, type=click.Path(), help="Match rules YAML (default config/match_rules.yml)")
@click.option("--fix", is_flag=True, default=False, help="[validate|run] Trim whitespace and remove duplicate wallets before validating")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--network", default=None, type=click.Choice(list(VALID_NETWORKS)), help="[classify|run] Ledger network (env NETWORK, default devnet)")
@click.option("--rpc-url", default=None, help="[classify|run] Explicit JSON-RPC endpoint (env RPC_URL)")
@click.option("--window-start", default=None, help="[classify|run] Tour window start YYYY-MM-DD (env TOUR_START_DATE)")
@click.option("--window-end", default=None, help="[classify|run] Tour window end YYYY-MM-DD, inclusive (env TOUR_END_DATE)")
@click.option("--lookback-limit", default=None, type=int, help="[classify|run] Recent signatures fetched per wallet (overrides rules)")
@click.option("--request-delay-seconds", default=None, type=float, help="[classify|run] Pause between ledger queries (overrides rules)")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging")
def main(
    mode: str,
    raw_dir: str | None,
    wallets_path: str | None,
    registrations_path: tuple[str, ...],
    data_dir: str,
    reports_dir: str,
    results_dir: str,
    rules_file: str | None,
    fix: bool,
    dry_run: bool,
    run_id: str | None,
    network: str | None,
    rpc_url: str | None,
    window_start: str | None,
    window_end: str | None,
    lookback_limit: int | None,
    request_delay_seconds: float | None,
    verbose: bool,
) -> None:
    """Participant reconciliation and builder classification CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()
    data_path = Path(data_dir)
    participants_path = data_path / PARTICIPANTS_FILE
    reports_path = Path(reports_dir)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    rules = _load_rules(
        rules_file, run_id,
        lookback_limit=lookback_limit,
        request_delay_seconds=request_delay_seconds,
    )
    source_paths: dict[str, str] = {"rules_version": rules.version, "rules_hash": rules.yaml_hash}

    if mode == "consolidate":
        wallet_file, reg_files = _resolve_inputs(
            raw_dir, wallets_path, registrations_path, rules, run_id,
        )
        source_paths.update(_input_paths(wallet_file, reg_files))
        result = run_consolidate(
            wallet_file, reg_files, rules,
            reports_dir=reports_path, participants_path=participants_path, dry_run=dry_run,
        )
        counters.participants_written = len(result.participants)
        counters.duplicates_dropped = result.duplicates_dropped
        counters.stages["consolidate"] = result.counters.to_dict()
        click.echo(build_consolidation_report(result, dry_run=dry_run))

    elif mode == "validate":
        participants = _load_participants_or_exit(participants_path, run_id)
        counters.participants_loaded = len(participants)
        source_paths["participants_path"] = str(participants_path)
        outcome = run_validate(participants, fix=fix)
        if outcome.fixed and not dry_run:
            save_participants(participants_path, outcome.participants)
            click.echo(f"[{run_id}] Saved cleaned data to {participants_path}")
        _record_validation(counters, outcome)
        click.echo(build_validation_report(outcome, fix=fix))
        if not dry_run:
            save_validation_report(reports_path / VALIDATION_REPORT_FILE, outcome.report.to_dict())
        _write_report(run_id, started_at, mode, dry_run, source_paths, counters)
        if not outcome.report.passed:
            click.echo(f"[{run_id}] Validation failed; fix errors before classifying", err=True)
            sys.exit(1)
        return

    elif mode == "classify":
        participants = _load_participants_or_exit(participants_path, run_id)
        counters.participants_loaded = len(participants)
        window = _resolve_window(window_start, window_end, run_id)
        ledger = _build_ledger(network, rpc_url, run_id)
        source_paths.update({"participants_path": str(participants_path), **_window_paths(window)})
        with _stop_on_interrupt() as flag:
            result = run_classify(
                participants, ledger, window, rules,
                pacer=Pacer(delay=rules.request_delay_seconds),
                on_progress=_progress_echo(run_id),
                should_stop=flag.should_stop,
            )
        _record_classification(counters, result)
        _finish_classification(result, window, data_path, Path(results_dir), run_id, dry_run)
        _write_report(run_id, started_at, mode, dry_run, source_paths, counters)
        if result.stopped:
            click.echo(
                f"[{run_id}] Safe stop: {result.counters.stop_reason}; "
                f"{len(result.not_processed)} participant(s) not processed",
                err=True,
            )
            sys.exit(1)
        return

    elif mode == "run":
        wallet_file, reg_files = _resolve_inputs(
            raw_dir, wallets_path, registrations_path, rules, run_id,
        )
        window = _resolve_window(window_start, window_end, run_id)
        ledger = _build_ledger(network, rpc_url, run_id)
        source_paths.update({**_input_paths(wallet_file, reg_files), **_window_paths(window)})
        with _stop_on_interrupt() as flag:
            pipeline = run_pipeline(
                wallet_file, reg_files, ledger, window, rules,
                reports_dir=reports_path,
                participants_path=participants_path,
                fix=fix,
                dry_run=dry_run,
                pacer=Pacer(delay=rules.request_delay_seconds),
                on_progress=_progress_echo(run_id),
                should_stop=flag.should_stop,
            )

        counters.participants_written = len(pipeline.consolidation.participants)
        counters.duplicates_dropped = pipeline.consolidation.duplicates_dropped
        counters.stages["consolidate"] = pipeline.consolidation.counters.to_dict()
        click.echo(build_consolidation_report(pipeline.consolidation, dry_run=dry_run))
        _record_validation(counters, pipeline.validation)
        click.echo(build_validation_report(pipeline.validation, fix=fix))

        if pipeline.halted:
            _write_report(run_id, started_at, mode, dry_run, source_paths, counters)
            click.echo(
                f"[{run_id}] Halted at {pipeline.stage}: "
                f"{len(pipeline.validation.report.errors)} error(s), "
                f"{len(pipeline.validation.report.duplicates)} duplicate cluster(s)",
                err=True,
            )
            sys.exit(1)

        result = pipeline.classification
        if result is None:
            _fatal(run_id, f"pipeline stopped at {pipeline.stage} without classifying")
        _record_classification(counters, result)
        _finish_classification(result, window, data_path, Path(results_dir), run_id, dry_run)
        _write_report(run_id, started_at, mode, dry_run, source_paths, counters)
        if result.stopped:
            click.echo(f"[{run_id}] Safe stop: {result.counters.stop_reason}", err=True)
            sys.exit(1)
        return

    _write_report(run_id, started_at, mode, dry_run, source_paths, counters)


def _input_paths(wallet_file: Path, reg_files: list[Path]) -> dict[str, str]:
    return {
        "wallets_path": str(wallet_file),
        "registrations_paths": ", ".join(str(p) for p in reg_files),
    }


def _window_paths(window: TourWindow) -> dict[str, str]:
    return {"window_start": window.start.isoformat(), "window_end": window.end.isoformat()}


def _record_validation(counters: RunCounters, outcome: ValidationOutcome) -> None:
    counters.validation_errors = len(outcome.report.errors)
    counters.validation_warnings = len(outcome.report.warnings)
    counters.duplicates_dropped += outcome.duplicates_removed
    counters.stages["validate"] = {
        **outcome.report.summary,
        "whitespace_fixed": outcome.whitespace_fixed,
        "duplicates_removed": outcome.duplicates_removed,
    }


def _write_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
) -> None:
    report_path = write_run_report(run_id, started_at, mode, dry_run, source_paths, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()

"""poap_etl.activity

Builder classification from on-chain activity inside the tour window.

For each participant wallet:
  1. Reject malformed addresses up front (error_tag='invalid_address', no query).
  2. Fetch the most recent `lookback_limit` signatures (newest first).
     Older activity beyond that bound is not seen; this is a known limit,
     kept configurable rather than paginated.
  3. Keep signatures whose block time lies in [start, end] inclusive.
  4. is_builder = count > 0; first_tx = earliest in-window signature
     (the last one in newest-first order).

Ledger failures are per-wallet (error_tag='lookup_failed') and never stop
the batch.  Wallets are processed one at a time with a fixed pause between
consecutive queries; a caller-supplied should_stop() is checked before
each wallet so a run can be aborted between items.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from poap_etl.identity_match import Participant
from poap_etl.ledger import LedgerError, LedgerQuery
from poap_etl.normalize import parse_window_date
from poap_etl.validation import validate_address

log = logging.getLogger(__name__)

DEFAULT_LOOKBACK_LIMIT = 100

ERROR_INVALID_ADDRESS = "invalid_address"
ERROR_LOOKUP_FAILED = "lookup_failed"


# ---------------------------------------------------------------------------
# Tour window
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TourWindow:
    """Inclusive [start, end] window compared against block times."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TourWindow bounds must be timezone-aware")
        if self.start > self.end:
            raise ValueError(f"window start {self.start} is after end {self.end}")

    @classmethod
    def from_dates(cls, start: str, end: str) -> "TourWindow":
        """Build from 'YYYY-MM-DD' strings; the end date counts through 23:59:59 UTC."""
        s = parse_window_date(start)
        e = parse_window_date(end, end_of_day=True)
        if s is None:
            raise ValueError(f"window start '{start}' is not a valid date (use YYYY-MM-DD)")
        if e is None:
            raise ValueError(f"window end '{end}' is not a valid date (use YYYY-MM-DD)")
        return cls(s, e)

    @property
    def start_ts(self) -> float:
        return self.start.timestamp()

    @property
    def end_ts(self) -> float:
        return self.end.timestamp()

    def contains(self, block_time: int | float | None) -> bool:
        if block_time is None:
            return False
        return self.start_ts <= block_time <= self.end_ts

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# ---------------------------------------------------------------------------
# Pacing
# ---------------------------------------------------------------------------

@dataclass
class Pacer:
    """Fixed pause between consecutive ledger queries, with optional jitter."""

    delay: float = 0.2
    jitter: float = 0.0
    sleep_fn: Callable[[float], None] = field(default=time.sleep, repr=False)

    def sleep(self) -> None:
        d = self.delay
        if self.jitter:
            d += random.uniform(-self.jitter, self.jitter)
        if d > 0:
            self.sleep_fn(d)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActivityResult:
    wallet: str
    is_builder: bool
    transaction_count: int = 0
    first_tx: str | None = None
    error_tag: str | None = None
    error: str | None = None


@dataclass
class ClassificationCounters:
    wallets_checked: int = 0
    builders: int = 0
    non_builders: int = 0
    invalid_addresses: int = 0
    lookup_failures: int = 0
    not_processed: int = 0
    stop_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class ClassificationResult:
    builders: list[dict[str, Any]] = field(default_factory=list)
    non_builders: list[dict[str, Any]] = field(default_factory=list)
    not_processed: list[dict[str, Any]] = field(default_factory=list)
    results: list[ActivityResult] = field(default_factory=list)
    counters: ClassificationCounters = field(default_factory=ClassificationCounters)

    @property
    def stopped(self) -> bool:
        return self.counters.stop_reason is not None


ProgressCallback = Callable[[int, int, Participant, ActivityResult], None]


# ---------------------------------------------------------------------------
# Per-wallet classification
# ---------------------------------------------------------------------------

def classify_wallet(
    ledger: LedgerQuery,
    wallet: str,
    window: TourWindow,
    lookback_limit: int = DEFAULT_LOOKBACK_LIMIT,
) -> ActivityResult:
    """Classify one wallet.  Never raises for ledger or address problems."""
    check = validate_address(wallet)
    if not check.valid:
        return ActivityResult(
            wallet=wallet, is_builder=False,
            error_tag=ERROR_INVALID_ADDRESS, error=check.error or "Invalid address",
        )

    try:
        signatures = ledger.get_recent_signatures(wallet, lookback_limit)
    except Exception as exc:
        # Any lookup failure is tagged on this wallet; the batch continues
        if not isinstance(exc, LedgerError):
            log.warning("unexpected ledger failure for %s: %r", wallet, exc)
        return ActivityResult(
            wallet=wallet, is_builder=False,
            error_tag=ERROR_LOOKUP_FAILED, error=str(exc) or type(exc).__name__,
        )

    relevant = [s for s in signatures if window.contains(s.block_time)]
    return ActivityResult(
        wallet=wallet,
        is_builder=len(relevant) > 0,
        transaction_count=len(relevant),
        first_tx=relevant[-1].signature if relevant else None,
    )


# ---------------------------------------------------------------------------
# Batch classification
# ---------------------------------------------------------------------------

def classify_participants(
    ledger: LedgerQuery,
    participants: list[Participant],
    window: TourWindow,
    lookback_limit: int = DEFAULT_LOOKBACK_LIMIT,
    pacer: Pacer | None = None,
    on_progress: ProgressCallback | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> ClassificationResult:
    """Classify every participant in input order and partition the results.

    on_progress(current, total, participant, result) is an observer only; its
    return value and any state it keeps do not affect classification.
    """
    pacer = pacer or Pacer()
    out = ClassificationResult()
    ctrs = out.counters
    total = len(participants)

    for idx, p in enumerate(participants):
        if should_stop is not None and should_stop():
            ctrs.stop_reason = "aborted"
            remaining = participants[idx:]
            out.not_processed.extend(r.to_document() for r in remaining)
            ctrs.not_processed = len(remaining)
            log.info("classification aborted before item %d/%d", idx + 1, total)
            break

        if idx > 0:
            pacer.sleep()

        result = classify_wallet(ledger, p.wallet, window, lookback_limit)
        out.results.append(result)
        ctrs.wallets_checked += 1

        if result.is_builder:
            ctrs.builders += 1
            out.builders.append({
                **p.to_document(),
                "transactionCount": result.transaction_count,
                "firstTx": result.first_tx,
            })
        else:
            ctrs.non_builders += 1
            if result.error_tag == ERROR_INVALID_ADDRESS:
                ctrs.invalid_addresses += 1
            elif result.error_tag == ERROR_LOOKUP_FAILED:
                ctrs.lookup_failures += 1
            if result.error:
                ctrs.warnings.append(f"{p.wallet}: {result.error_tag}: {result.error}")
                log.warning("wallet %s not classified: %s", p.wallet, result.error)
            out.non_builders.append({
                **p.to_document(),
                "error": result.error,
                "errorTag": result.error_tag,
            })

        if on_progress is not None:
            on_progress(idx + 1, total, p, result)

    return out


def build_classification_report(
    ctrs: ClassificationCounters,
    window: TourWindow,
    dry_run: bool = False,
) -> str:
    lines = [
        "=" * 60,
        "Builder Classification Report",
        f"  dry_run: {dry_run}",
        f"  window:  {window.start.date()} .. {window.end.date()}",
        "=" * 60,
        f"  wallets checked:     {ctrs.wallets_checked}",
        f"    → builders:        {ctrs.builders}",
        f"    → non-builders:    {ctrs.non_builders}",
        f"  invalid addresses:   {ctrs.invalid_addresses}",
        f"  lookup failures:     {ctrs.lookup_failures}",
        f"  not processed:       {ctrs.not_processed}",
    ]
    if ctrs.stop_reason:
        lines.append(f"Stopped early: {ctrs.stop_reason}")
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)

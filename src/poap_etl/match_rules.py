"""poap_etl.match_rules

YAML-based matching and classification rules.

Responsibilities:
  - Load and validate the YAML rule file (config/match_rules.yml)
  - Expose the similarity thresholds, walk-in label, ledger lookback and
    pacing delay, and input-discovery patterns as a MatchRules value
  - Hash YAML content for traceability in run reports
  - Route a similarity score to 'fuzzy' / 'review' / 'missing'

Usage:
    from pathlib import Path
    from poap_etl.match_rules import load_match_rules, match_band

    rules = load_match_rules(Path("config/match_rules.yml"))
    band = match_band(rules, 0.78)   # → "review"
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({"version", "thresholds"})

REQUIRED_THRESHOLD_KEYS = frozenset({"fuzzy_accept", "review"})

MAX_LOOKBACK_LIMIT = 1000

MATCH_BANDS = ("fuzzy", "review", "missing")

DEFAULT_RULES_PATH = Path(__file__).parent.parent.parent / "config" / "match_rules.yml"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MatchRulesError(ValueError):
    """Raised when a YAML rule file fails schema validation."""


# ---------------------------------------------------------------------------
# MatchRules dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchRules:
    """Parsed, validated rules loaded from a YAML file (or the defaults)."""

    version: str = "v1"
    fuzzy_accept: float = 0.85
    review: float = 0.70
    walk_in_label: str = "WALK-IN"
    lookback_limit: int = 100
    request_delay_seconds: float = 0.2
    wallet_glob: str = "*wallet*.csv"
    registration_glob: str = "*luma*.csv"
    group_label_pattern: str = r"^[a-z0-9]+-([^-.]+)"
    yaml_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    @classmethod
    def defaults(cls) -> "MatchRules":
        return cls()

    def with_overrides(self, **overrides: Any) -> "MatchRules":
        """Return a copy with every non-None override applied, re-validated."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        updated = replace(self, **changes)
        _check_values(
            updated.fuzzy_accept,
            updated.review,
            updated.lookback_limit,
            updated.request_delay_seconds,
        )
        return updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "fuzzy_accept": self.fuzzy_accept,
            "review": self.review,
            "walk_in_label": self.walk_in_label,
            "lookback_limit": self.lookback_limit,
            "request_delay_seconds": self.request_delay_seconds,
            "yaml_hash": self.yaml_hash,
        }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_match_rules(yaml_path: Path | None = None) -> MatchRules:
    """Load, validate, and return MatchRules from a YAML file.

    Args:
        yaml_path: Path to the rule file.  None uses DEFAULT_RULES_PATH when
                   it exists, otherwise the built-in defaults.

    Raises:
        MatchRulesError: If any required field is missing or invalid.
        FileNotFoundError: If an explicit yaml_path does not exist.
    """
    if yaml_path is None:
        if not DEFAULT_RULES_PATH.exists():
            return MatchRules.defaults()
        yaml_path = DEFAULT_RULES_PATH

    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_match_rules(data)

    defaults = MatchRules.defaults()
    thresholds = data["thresholds"]
    activity = data.get("activity") or {}
    inputs = data.get("inputs") or {}
    return MatchRules(
        version=str(data["version"]),
        fuzzy_accept=float(thresholds["fuzzy_accept"]),
        review=float(thresholds["review"]),
        walk_in_label=str(data.get("walk_in_label") or defaults.walk_in_label),
        lookback_limit=int(activity.get("lookback_limit", defaults.lookback_limit)),
        request_delay_seconds=float(
            activity.get("request_delay_seconds", defaults.request_delay_seconds)
        ),
        wallet_glob=str(inputs.get("wallet_glob") or defaults.wallet_glob),
        registration_glob=str(inputs.get("registration_glob") or defaults.registration_glob),
        group_label_pattern=str(
            inputs.get("group_label_pattern") or defaults.group_label_pattern
        ),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        raw_yaml=raw,
    )


def validate_match_rules(data: dict[str, Any]) -> None:
    """Raise MatchRulesError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - thresholds numeric, in [0.0, 1.0], review <= fuzzy_accept
      - activity.lookback_limit integer in [1, 1000]
      - activity.request_delay_seconds numeric and >= 0
    """
    if not isinstance(data, dict):
        raise MatchRulesError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise MatchRulesError(f"Missing required YAML keys: {sorted(missing_keys)}")

    thresholds = data.get("thresholds") or {}
    if not isinstance(thresholds, dict):
        raise MatchRulesError("'thresholds' must be a mapping.")
    missing_thresh = REQUIRED_THRESHOLD_KEYS - set(thresholds.keys())
    if missing_thresh:
        raise MatchRulesError(f"Missing threshold keys: {sorted(missing_thresh)}")

    parsed: dict[str, float] = {}
    for key in sorted(REQUIRED_THRESHOLD_KEYS):
        val = thresholds[key]
        try:
            parsed[key] = float(val)
        except (TypeError, ValueError):
            raise MatchRulesError(f"Threshold '{key}' value '{val}' is not numeric.")

    activity = data.get("activity") or {}
    if not isinstance(activity, dict):
        raise MatchRulesError("'activity' must be a mapping.")

    lookback = activity.get("lookback_limit", MatchRules.lookback_limit)
    if isinstance(lookback, bool) or not isinstance(lookback, int):
        raise MatchRulesError(f"activity.lookback_limit '{lookback}' must be an integer.")

    delay = activity.get("request_delay_seconds", MatchRules.request_delay_seconds)
    try:
        delay_f = float(delay)
    except (TypeError, ValueError):
        raise MatchRulesError(f"activity.request_delay_seconds '{delay}' is not numeric.")

    _check_values(parsed["fuzzy_accept"], parsed["review"], lookback, delay_f)


def _check_values(fuzzy_accept: float, review: float, lookback: int, delay: float) -> None:
    for key, fval in (("fuzzy_accept", fuzzy_accept), ("review", review)):
        if not (0.0 <= fval <= 1.0):
            raise MatchRulesError(f"Threshold '{key}' value {fval} must be in [0.0, 1.0].")
    if review > fuzzy_accept:
        raise MatchRulesError(
            f"'review' threshold ({review}) must be <= 'fuzzy_accept' ({fuzzy_accept})."
        )
    if not (1 <= lookback <= MAX_LOOKBACK_LIMIT):
        raise MatchRulesError(
            f"activity.lookback_limit {lookback} must be in [1, {MAX_LOOKBACK_LIMIT}]."
        )
    if delay < 0:
        raise MatchRulesError(f"activity.request_delay_seconds {delay} must be >= 0.")


# ---------------------------------------------------------------------------
# Threshold routing
# ---------------------------------------------------------------------------

def match_band(rules: MatchRules, score: float) -> str:
    """Return 'fuzzy', 'review' or 'missing' for a best-candidate score."""
    if score >= rules.fuzzy_accept:
        return "fuzzy"
    if score >= rules.review:
        return "review"
    return "missing"

"""Unit tests for poap_etl.match_rules."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest
import yaml

from poap_etl.match_rules import (
    DEFAULT_RULES_PATH,
    MatchRules,
    MatchRulesError,
    load_match_rules,
    match_band,
    validate_match_rules,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

RULES_YAML = textwrap.dedent("""\
    version: "v2.0.0"
    thresholds:
      fuzzy_accept: 0.90
      review: 0.60
    walk_in_label: "NO-REGISTRATION"
    activity:
      lookback_limit: 250
      request_delay_seconds: 0.5
    inputs:
      wallet_glob: "wallet-export*.csv"
      registration_glob: "reg-*.csv"
      group_label_pattern: "^reg-([^-.]+)"
""")

MINIMAL_YAML = textwrap.dedent("""\
    version: "v1"
    thresholds:
      fuzzy_accept: 0.85
      review: 0.70
""")


@pytest.fixture
def rules_path(tmp_path: Path) -> Path:
    p = tmp_path / "rules.yml"
    p.write_text(RULES_YAML, encoding="utf-8")
    return p


@pytest.fixture
def rules(rules_path: Path) -> MatchRules:
    return load_match_rules(rules_path)


def _valid_data() -> dict:
    return yaml.safe_load(RULES_YAML)


# ---------------------------------------------------------------------------
# load_match_rules: happy path
# ---------------------------------------------------------------------------

class TestLoadMatchRules:
    def test_loads_version(self, rules: MatchRules):
        assert rules.version == "v2.0.0"

    def test_loads_thresholds(self, rules: MatchRules):
        assert rules.fuzzy_accept == 0.90
        assert rules.review == 0.60

    def test_loads_walk_in_label(self, rules: MatchRules):
        assert rules.walk_in_label == "NO-REGISTRATION"

    def test_loads_activity(self, rules: MatchRules):
        assert rules.lookback_limit == 250
        assert rules.request_delay_seconds == 0.5

    def test_loads_inputs(self, rules: MatchRules):
        assert rules.wallet_glob == "wallet-export*.csv"
        assert rules.registration_glob == "reg-*.csv"
        assert rules.group_label_pattern == "^reg-([^-.]+)"

    def test_yaml_hash_is_sha256_hex(self, rules: MatchRules):
        expected = hashlib.sha256(RULES_YAML.encode("utf-8")).hexdigest()
        assert rules.yaml_hash == expected

    def test_raw_yaml_preserved(self, rules: MatchRules):
        assert "walk_in_label" in rules.raw_yaml

    def test_minimal_file_uses_defaults(self, tmp_path: Path):
        p = tmp_path / "min.yml"
        p.write_text(MINIMAL_YAML, encoding="utf-8")
        loaded = load_match_rules(p)
        defaults = MatchRules.defaults()
        assert loaded.walk_in_label == defaults.walk_in_label
        assert loaded.lookback_limit == defaults.lookback_limit
        assert loaded.wallet_glob == defaults.wallet_glob

    def test_file_not_found_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_match_rules(tmp_path / "missing.yml")

    def test_shipped_rules_match_defaults(self):
        assert DEFAULT_RULES_PATH.exists()
        shipped = load_match_rules()
        defaults = MatchRules.defaults()
        assert shipped.fuzzy_accept == defaults.fuzzy_accept
        assert shipped.review == defaults.review
        assert shipped.walk_in_label == defaults.walk_in_label
        assert shipped.lookback_limit == defaults.lookback_limit


# ---------------------------------------------------------------------------
# validate_match_rules
# ---------------------------------------------------------------------------

class TestValidateMatchRules:
    def test_valid_data_passes(self):
        validate_match_rules(_valid_data())

    def test_non_mapping_root(self):
        with pytest.raises(MatchRulesError, match="mapping"):
            validate_match_rules(["version"])

    @pytest.mark.parametrize("key", ["version", "thresholds"])
    def test_missing_required_key(self, key):
        data = _valid_data()
        del data[key]
        with pytest.raises(MatchRulesError, match="Missing required"):
            validate_match_rules(data)

    def test_missing_threshold_key(self):
        data = _valid_data()
        del data["thresholds"]["review"]
        with pytest.raises(MatchRulesError, match="threshold keys"):
            validate_match_rules(data)

    def test_non_numeric_threshold(self):
        data = _valid_data()
        data["thresholds"]["fuzzy_accept"] = "high"
        with pytest.raises(MatchRulesError, match="not numeric"):
            validate_match_rules(data)

    def test_threshold_out_of_range(self):
        data = _valid_data()
        data["thresholds"]["fuzzy_accept"] = 1.5
        with pytest.raises(MatchRulesError, match=r"\[0.0, 1.0\]"):
            validate_match_rules(data)

    def test_review_above_fuzzy_accept(self):
        data = _valid_data()
        data["thresholds"]["review"] = 0.95
        with pytest.raises(MatchRulesError, match="must be <="):
            validate_match_rules(data)

    @pytest.mark.parametrize("limit", [0, 1001, "many", True])
    def test_bad_lookback_limit(self, limit):
        data = _valid_data()
        data["activity"]["lookback_limit"] = limit
        with pytest.raises(MatchRulesError, match="lookback_limit"):
            validate_match_rules(data)

    def test_negative_delay(self):
        data = _valid_data()
        data["activity"]["request_delay_seconds"] = -1
        with pytest.raises(MatchRulesError, match="request_delay_seconds"):
            validate_match_rules(data)

    def test_error_is_value_error(self):
        assert issubclass(MatchRulesError, ValueError)


# ---------------------------------------------------------------------------
# MatchRules helpers
# ---------------------------------------------------------------------------

class TestWithOverrides:
    def test_none_values_ignored(self):
        base = MatchRules.defaults()
        assert base.with_overrides(lookback_limit=None) is base

    def test_override_applied(self):
        updated = MatchRules.defaults().with_overrides(lookback_limit=500)
        assert updated.lookback_limit == 500

    def test_override_revalidated(self):
        with pytest.raises(MatchRulesError):
            MatchRules.defaults().with_overrides(lookback_limit=5000)

    def test_to_dict_has_thresholds(self):
        d = MatchRules.defaults().to_dict()
        assert d["fuzzy_accept"] == 0.85
        assert d["review"] == 0.70


class TestMatchBand:
    @pytest.mark.parametrize("score,expected", [
        (1.0, "fuzzy"),
        (0.85, "fuzzy"),
        (0.84, "review"),
        (0.70, "review"),
        (0.69, "missing"),
        (0.0, "missing"),
    ])
    def test_default_bands(self, score, expected):
        assert match_band(MatchRules.defaults(), score) == expected

    def test_custom_thresholds(self, rules: MatchRules):
        assert match_band(rules, 0.65) == "review"
        assert match_band(rules, 0.89) == "review"
        assert match_band(rules, 0.90) == "fuzzy"

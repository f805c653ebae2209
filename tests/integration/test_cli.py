"""CLI integration tests (click.testing.CliRunner, fake ledger, tmp dirs)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from poap_etl import cli
from poap_etl.identity_match import Participant
from poap_etl.shared import load_builders, save_participants

ADDR_JANE = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch):
    """Run from tmp_path so ./artifacts lands there; clear ledger env vars."""
    monkeypatch.chdir(tmp_path)
    for var in ("RPC_URL", "NETWORK", "TOUR_START_DATE", "TOUR_END_DATE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def ledger_factory(monkeypatch, fake_ledger):
    urls: list[str] = []

    def _factory(url: str):
        urls.append(url)
        return fake_ledger

    monkeypatch.setattr(cli, "SolanaRpcClient", _factory)
    return urls


def _invoke(*args: str):
    return CliRunner().invoke(cli.main, list(args), catch_exceptions=False)


def _dirs(tmp_path: Path) -> list[str]:
    return [
        "--data-dir", str(tmp_path / "data"),
        "--reports-dir", str(tmp_path / "reports"),
        "--results-dir", str(tmp_path / "results"),
    ]


# ---------------------------------------------------------------------------
# consolidate
# ---------------------------------------------------------------------------

class TestConsolidateMode:
    def test_writes_outputs_and_run_report(self, raw_dir: Path, tmp_path: Path):
        result = _invoke(
            "--mode", "consolidate", "--raw-dir", str(raw_dir), "--run-id", "run-c",
            *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        assert "[run-c] Starting consolidate run" in result.output
        assert "Consolidation Report" in result.output
        assert (tmp_path / "data" / "participants.json").exists()
        assert (tmp_path / "reports" / "review-needed.csv").exists()
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-c.json").read_text())
        assert report["mode"] == "consolidate"
        assert report["counters"]["participants_written"] == 4
        assert report["counters"]["stages"]["consolidate"]["review_needed"] == 1

    def test_explicit_paths(self, raw_dir: Path, tmp_path: Path):
        result = _invoke(
            "--mode", "consolidate",
            "--wallets-path", str(raw_dir / "wallets.csv"),
            "--registrations-path", str(raw_dir / "luma-unilag-day1.csv"),
            *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        doc = json.loads((tmp_path / "data" / "participants.json").read_text())
        assert doc["participants"][0]["groupLabel"] == "UNILAG"

    def test_wallets_path_alone_is_fatal(self, raw_dir: Path, tmp_path: Path):
        result = _invoke(
            "--mode", "consolidate", "--wallets-path", str(raw_dir / "wallets.csv"),
            *_dirs(tmp_path),
        )
        assert result.exit_code == 1
        assert "must be given together" in result.output

    def test_missing_raw_dir_is_fatal(self, tmp_path: Path):
        result = _invoke("--mode", "consolidate", "--raw-dir", str(tmp_path / "nope"))
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_dry_run_writes_nothing(self, raw_dir: Path, tmp_path: Path):
        result = _invoke(
            "--mode", "consolidate", "--raw-dir", str(raw_dir), "--dry-run", *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        assert not (tmp_path / "data").exists()


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

class TestValidateMode:
    def _write(self, tmp_path: Path, participants: list[Participant]) -> Path:
        return save_participants(tmp_path / "data" / "participants.json", participants)

    def test_passes_and_writes_report(self, tmp_path: Path):
        self._write(tmp_path, [Participant(ADDR_JANE, "Jane", "jane@x.com", "UI", "exact", 1.0)])
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 0, result.output
        assert "PASSED" in result.output
        report = json.loads((tmp_path / "reports" / "validation-report.json").read_text())
        assert report["summary"]["valid"] == 1

    def test_errors_exit_non_zero_with_itemized_rows(self, tmp_path: Path):
        self._write(tmp_path, [
            Participant("short", "Jane", "jane@x.com", "UI", "exact", 1.0),
            Participant(ADDR_JANE, "Bo", "not-an-email", "UI", "exact", 1.0),
        ])
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert 'Row 1: Invalid length: 5 chars' in result.output
        assert "Row 2: Invalid email format" in result.output

    def test_fix_removes_duplicates_and_saves(self, tmp_path: Path):
        path = self._write(tmp_path, [
            Participant(f"{ADDR_JANE} ", "Jane", "jane@x.com", "UI", "exact", 1.0),
            Participant(ADDR_JANE, "Janet", "janet@x.com", "UI", "exact", 1.0),
        ])
        result = _invoke("--mode", "validate", "--fix", *_dirs(tmp_path))
        assert result.exit_code == 0, result.output
        doc = json.loads(path.read_text())
        assert [p["name"] for p in doc["participants"]] == ["Jane"]
        assert doc["participants"][0]["wallet"] == ADDR_JANE

    def test_duplicates_without_fix_fail(self, tmp_path: Path):
        self._write(tmp_path, [
            Participant(ADDR_JANE, "Jane", "jane@x.com", "UI", "exact", 1.0),
            Participant(ADDR_JANE, "Janet", "janet@x.com", "UI", "exact", 1.0),
        ])
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "re-run with --fix" in result.output

    def test_missing_document_is_fatal(self, tmp_path: Path):
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "participants document not found" in result.output

    def test_malformed_document_is_fatal(self, tmp_path: Path):
        path = tmp_path / "data" / "participants.json"
        path.parent.mkdir(parents=True)
        path.write_text('{"people": []}', encoding="utf-8")
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "could not parse" in result.output

    def test_empty_document_fails(self, tmp_path: Path):
        self._write(tmp_path, [])
        result = _invoke("--mode", "validate", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "No participants found or invalid data format" in result.output


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassifyMode:
    def test_writes_builders_and_results(self, raw_dir: Path, tmp_path: Path, ledger_factory):
        assert _invoke("--mode", "consolidate", "--raw-dir", str(raw_dir), *_dirs(tmp_path)).exit_code == 0
        result = _invoke(
            "--mode", "classify", "--run-id", "run-k", "--request-delay-seconds", "0",
            *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        assert "[run-k] [1/4]" in result.output
        assert "builder (1 tx)" in result.output
        assert "lookup_failed" in result.output
        assert [b["wallet"] for b in load_builders(tmp_path / "data" / "builders.json")] == [ADDR_JANE]
        builders = json.loads((tmp_path / "data" / "builders.json").read_text())
        assert builders["window"]["end"].startswith("2025-12-31T23:59:59")
        assert (tmp_path / "results" / "classification-run-k.json").exists()
        assert ledger_factory == ["https://api.devnet.solana.com"]

    def test_env_window_and_rpc_url(self, raw_dir: Path, tmp_path: Path, ledger_factory, monkeypatch):
        _invoke("--mode", "consolidate", "--raw-dir", str(raw_dir), *_dirs(tmp_path))
        monkeypatch.setenv("TOUR_START_DATE", "2025-07-01")
        monkeypatch.setenv("TOUR_END_DATE", "2025-07-31")
        monkeypatch.setenv("RPC_URL", "http://rpc.local")
        result = _invoke("--mode", "classify", "--request-delay-seconds", "0", *_dirs(tmp_path))
        assert result.exit_code == 0, result.output
        builders = json.loads((tmp_path / "data" / "builders.json").read_text())
        assert builders["builders"] == []
        assert builders["window"]["start"].startswith("2025-07-01")
        assert ledger_factory == ["http://rpc.local"]

    def test_mainnet_network_flag(self, raw_dir: Path, tmp_path: Path, ledger_factory):
        _invoke("--mode", "consolidate", "--raw-dir", str(raw_dir), *_dirs(tmp_path))
        result = _invoke(
            "--mode", "classify", "--network", "mainnet-beta", "--dry-run",
            "--request-delay-seconds", "0", *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        assert ledger_factory == ["https://api.mainnet-beta.solana.com"]
        assert not (tmp_path / "data" / "builders.json").exists()

    def test_invalid_window_is_fatal(self, raw_dir: Path, tmp_path: Path, ledger_factory):
        _invoke("--mode", "consolidate", "--raw-dir", str(raw_dir), *_dirs(tmp_path))
        result = _invoke(
            "--mode", "classify", "--window-start", "2025-12-31", "--window-end", "2025-01-01",
            *_dirs(tmp_path),
        )
        assert result.exit_code == 1
        assert "invalid tour window" in result.output

    def test_bad_lookback_override_is_fatal(self, tmp_path: Path):
        result = _invoke("--mode", "classify", "--lookback-limit", "0", *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "invalid rules" in result.output


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

class TestRunMode:
    def test_full_run(self, raw_dir: Path, tmp_path: Path, ledger_factory):
        result = _invoke(
            "--mode", "run", "--raw-dir", str(raw_dir), "--run-id", "run-all",
            "--request-delay-seconds", "0", *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        assert "Consolidation Report" in result.output
        assert "Validation Report" in result.output
        assert "Builder Classification Report" in result.output
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-all.json").read_text())
        assert report["counters"]["builders"] == 1
        assert report["counters"]["non_builders"] == 3

    def test_halts_at_validation_gate(self, tmp_path: Path, ledger_factory, fake_ledger):
        d = tmp_path / "raw"
        d.mkdir()
        (d / "wallets.csv").write_text(
            "Full Name,Devnet Wallet Address\nJane Doe,bad-wallet\n", encoding="utf-8",
        )
        (d / "luma-ui-day1.csv").write_text("name,email\nJane Doe,jane@x.com\n", encoding="utf-8")
        result = _invoke("--mode", "run", "--raw-dir", str(d), *_dirs(tmp_path))
        assert result.exit_code == 1
        assert "Halted at validate" in result.output
        assert 'Row 1: Invalid length' in result.output
        assert fake_ledger.calls == []
        assert not (tmp_path / "data" / "builders.json").exists()

    def test_custom_rules_file(self, raw_dir: Path, tmp_path: Path, ledger_factory):
        rules = tmp_path / "rules.yml"
        rules.write_text(
            'version: "test"\nthresholds:\n  fuzzy_accept: 0.75\n  review: 0.70\n',
            encoding="utf-8",
        )
        result = _invoke(
            "--mode", "consolidate", "--raw-dir", str(raw_dir), "--rules-file", str(rules),
            *_dirs(tmp_path),
        )
        assert result.exit_code == 0, result.output
        # Jon Smyth (0.80) now clears the fuzzy threshold
        assert not (tmp_path / "reports" / "review-needed.csv").exists()

    def test_missing_classification_is_fatal(self, raw_dir: Path, tmp_path: Path, ledger_factory, monkeypatch):
        real_run_pipeline = cli.run_pipeline

        def _without_classification(*args, **kwargs):
            result = real_run_pipeline(*args, **kwargs)
            result.classification = None
            return result

        monkeypatch.setattr(cli, "run_pipeline", _without_classification)
        result = _invoke(
            "--mode", "run", "--raw-dir", str(raw_dir), "--request-delay-seconds", "0",
            *_dirs(tmp_path),
        )
        assert result.exit_code == 1
        assert "FATAL: pipeline stopped at classify without classifying" in result.output
        assert not (tmp_path / "data" / "builders.json").exists()

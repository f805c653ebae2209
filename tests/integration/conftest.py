"""Shared fixtures for integration tests: raw export files and a fake ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from poap_etl.ledger import LedgerError, SignatureInfo
from poap_etl.records import write_records

ADDR_JANE = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
ADDR_JOHN = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
ADDR_WALK = "DRpbCBMxVnDK7maPM5tGv6MvB3v1sRMC86PZ8okm21hy"
ADDR_ADA = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"

WALLET_COLUMNS = ["Full Name", "Devnet Wallet Address", "Program ID", "Github profile"]
LUMA_COLUMNS = ["name", "first_name", "last_name", "email", "approval_status", "checked_in_at"]


def ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class FakeLedger:
    """In-memory ledger: address → newest-first signatures (or an exception)."""

    def __init__(self, by_address: dict | None = None) -> None:
        self.by_address = by_address or {}
        self.calls: list[str] = []

    def get_recent_signatures(self, address: str, limit: int) -> list[SignatureInfo]:
        self.calls.append(address)
        value = self.by_address.get(address, [])
        if isinstance(value, Exception):
            raise value
        return value[:limit]


@pytest.fixture
def raw_dir(tmp_path: Path) -> Path:
    """wallets.csv plus two Luma exports.

    Jane  — exact match, attends both days
    Jon   — review band against John Smith's wallet
    Ada   — fuzzy match (Ada Lovelac → Ada Lovelace)
    Zed   — registered, no wallet
    Walk  — wallet with no registration
    """
    d = tmp_path / "raw-data"
    write_records(d / "wallets.csv", [
        {"Full Name": "Jane Doe", "Devnet Wallet Address": ADDR_JANE,
         "Program ID": "Nil", "Github profile": "janedoe"},
        {"Full Name": "John Smith", "Devnet Wallet Address": ADDR_JOHN,
         "Program ID": "", "Github profile": ""},
        {"Full Name": "Ada Lovelace", "Devnet Wallet Address": ADDR_ADA,
         "Program ID": "", "Github profile": ""},
        {"Full Name": "Walk In", "Devnet Wallet Address": ADDR_WALK,
         "Program ID": "prog42", "Github profile": "walkin"},
        {"Full Name": "No Wallet", "Devnet Wallet Address": "nil",
         "Program ID": "", "Github profile": ""},
    ], WALLET_COLUMNS)
    write_records(d / "luma-unilag-day1.csv", [
        {"name": "Jane Doe", "email": "Jane@Example.com", "approval_status": "approved"},
        {"name": "Jon Smyth", "email": "jon@example.com", "approval_status": "approved"},
        {"name": "Ada Lovelac", "email": "ada@example.com", "checked_in_at": "2025-03-01T10:00:00Z"},
    ], LUMA_COLUMNS)
    write_records(d / "luma-ui-day1.csv", [
        {"name": "Jane Doe", "email": "jane@example.com", "approval_status": "approved"},
        {"first_name": "Zed", "last_name": "Quill", "email": "zed@example.com"},
    ], LUMA_COLUMNS)
    return d


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger({
        ADDR_JANE: [SignatureInfo("jane-sig", ts(2025, 6, 15, 12))],
        ADDR_ADA: [SignatureInfo("ada-old", ts(2024, 5, 1))],
        ADDR_WALK: LedgerError("RPC error: node is behind"),
    })

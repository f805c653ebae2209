"""poap_etl.ledger

Ledger query adapter: recent transaction signatures for a wallet over
Solana JSON-RPC.

The classifier only depends on the LedgerQuery protocol
(`get_recent_signatures(address, limit)`), so tests and alternative
transports can stand in for SolanaRpcClient.

Retry lives here, at the collaborator boundary, and is driven by an
explicit RetryPolicy.  Transport errors, HTTP 429 and HTTP 5xx are retried;
a JSON-RPC error object is a definitive answer and is raised immediately.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests

log = logging.getLogger(__name__)

DEFAULT_RPC_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

VALID_NETWORKS = tuple(DEFAULT_RPC_URLS)

USER_AGENT = "poap-etl/1.0 (builder verification)"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LedgerError(Exception):
    """Raised when the ledger cannot answer a query (transport or RPC error)."""


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    block_time: int | None  # epoch seconds; None when the node has no block time


class LedgerQuery(Protocol):
    def get_recent_signatures(self, address: str, limit: int) -> list[SignatureInfo]:
        """Return up to `limit` signatures, newest first."""
        ...


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and exponential backoff schedule (1s, 2s, 4s, ... capped)."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0")

    def delays(self) -> list[float]:
        """Delays to wait before attempts 2..max_attempts."""
        return [
            min(self.backoff_base_seconds * (2 ** n), self.backoff_cap_seconds)
            for n in range(self.max_attempts - 1)
        ]


def resolve_rpc_url(network: str | None, override: str | None = None) -> str:
    """Return the explicit RPC URL, else the public endpoint for network."""
    if override:
        return override
    net = network or "devnet"
    if net not in DEFAULT_RPC_URLS:
        raise ValueError(f"network must be one of: {', '.join(VALID_NETWORKS)}")
    return DEFAULT_RPC_URLS[net]


# ---------------------------------------------------------------------------
# JSON-RPC client
# ---------------------------------------------------------------------------

class SolanaRpcClient:
    """Minimal JSON-RPC 2.0 client for getSignaturesForAddress."""

    def __init__(
        self,
        rpc_url: str,
        session: requests.Session | None = None,
        timeout: int = 30,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})
        self._ids = itertools.count(1)

    def _request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        delays = self.retry_policy.delays()
        last_error = "no attempt made"

        for attempt in range(self.retry_policy.max_attempts):
            if attempt > 0:
                self._sleep(delays[attempt - 1])

            try:
                resp = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = f"transport error: {exc}"
                log.warning("%s attempt %d/%d failed: %s",
                            method, attempt + 1, self.retry_policy.max_attempts, last_error)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                log.warning("%s attempt %d/%d throttled: %s",
                            method, attempt + 1, self.retry_policy.max_attempts, last_error)
                continue

            if resp.status_code != 200:
                raise LedgerError(f"{method}: HTTP {resp.status_code}")

            try:
                body = resp.json()
            except ValueError as exc:
                raise LedgerError(f"{method}: malformed JSON response: {exc}") from exc

            if not isinstance(body, dict):
                raise LedgerError(f"{method}: malformed JSON-RPC response (not an object)")

            if body.get("error"):
                err = body["error"]
                msg = err.get("message") if isinstance(err, dict) else str(err)
                raise LedgerError(f"{method}: RPC error: {msg}")
            return body.get("result")

        raise LedgerError(
            f"{method}: gave up after {self.retry_policy.max_attempts} attempt(s): {last_error}"
        )

    def get_recent_signatures(self, address: str, limit: int) -> list[SignatureInfo]:
        result = self._request("getSignaturesForAddress", [address, {"limit": limit}])
        if not result:
            return []
        if not isinstance(result, list) or not all(isinstance(item, dict) for item in result):
            raise LedgerError(
                f"getSignaturesForAddress: unexpected result shape ({type(result).__name__})"
            )
        return [
            SignatureInfo(signature=str(item.get("signature")), block_time=_block_time(item))
            for item in result
        ]


def _block_time(item: dict[str, Any]) -> int | None:
    bt = item.get("blockTime")
    if isinstance(bt, bool) or not isinstance(bt, (int, float)):
        return None
    return int(bt)

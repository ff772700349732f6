from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from .project_constants import (
    DEFAULT_RPC_BACKOFF_S,
    DEFAULT_RPC_RETRIES,
    DEFAULT_RPC_TIMEOUT_S,
)

log = logging.getLogger(__name__)

# HTTP statuses worth another attempt (rate limiting, overloaded or restarting node)
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}

# JSON-RPC errors that will not change on retry (malformed request / params)
PERMANENT_RPC_ERROR_CODES = {-32600, -32601, -32602}


class RpcUnavailable(RuntimeError):
    """The node could not give an answer, even after retrying."""


class ChainReader(Protocol):
    """The four chain reads the ledger needs. RpcClient is the real one."""

    def get_signatures_for_address(
        self, address: str, limit: int, before: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...

    def get_parsed_token_accounts_by_owner(
        self, owner: str, program_id: str
    ) -> List[Dict[str, Any]]: ...

    def get_account_info(self, pubkey: str) -> Optional[Dict[str, Any]]: ...


class RpcClient:
    """
    JSON-RPC client over httpx with an explicit timeout and bounded retry.

    Transient failures (timeouts, connection errors, 429/5xx, node-side
    JSON-RPC errors) are retried with exponential backoff. Anything left
    after the last attempt surfaces as RpcUnavailable, never as a raw
    httpx exception.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = DEFAULT_RPC_TIMEOUT_S,
        max_attempts: int = DEFAULT_RPC_RETRIES,
        backoff_s: float = DEFAULT_RPC_BACKOFF_S,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s
        self._sleep = sleep
        self._ids = itertools.count(1)
        self.client = httpx.Client(timeout=timeout_s, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.client.post(self.rpc_url, json=payload)
                if resp.status_code in RETRYABLE_STATUS:
                    last_error = f"HTTP {resp.status_code}"
                else:
                    resp.raise_for_status()
                    data = resp.json()
                    if not isinstance(data, dict):
                        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                    error = data.get("error")
                    if error is None:
                        return data
                    if isinstance(error, dict) and error.get("code") in PERMANENT_RPC_ERROR_CODES:
                        raise RpcUnavailable(f"{method}: RPC error: {error}")
                    last_error = f"RPC error: {error}"
            except httpx.HTTPStatusError as e:
                raise RpcUnavailable(f"{method}: HTTP {e.response.status_code}")
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e!r}"
            except httpx.TransportError as e:
                last_error = f"transport error: {e!r}"
            except ValueError as e:
                last_error = f"invalid JSON response: {e}"

            if attempt < self.max_attempts:
                delay = self.backoff_s * (2 ** (attempt - 1))
                log.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    method,
                    attempt,
                    self.max_attempts,
                    last_error,
                    delay,
                )
                self._sleep(delay)

        raise RpcUnavailable(
            f"{method}: gave up after {self.max_attempts} attempts: {last_error}"
        )

    def get_signatures_for_address(
        self, address: str, limit: int, before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Newest-first signature infos: [{signature, slot, err, blockTime, ...}].
        Pass `before` to page further back in history.
        """
        opts: Dict[str, Any] = {"limit": limit, "commitment": "confirmed"}
        if before:
            opts["before"] = before
        data = self._post("getSignaturesForAddress", [address, opts])
        return list(data.get("result") or [])

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Parsed transaction, or None when the node does not have it (yet)."""
        data = self._post(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": "confirmed",
                },
            ],
        )
        return data.get("result")

    def get_parsed_token_accounts_by_owner(
        self, owner: str, program_id: str
    ) -> List[Dict[str, Any]]:
        data = self._post(
            "getTokenAccountsByOwner",
            [owner, {"programId": program_id}, {"encoding": "jsonParsed"}],
        )
        result = data.get("result") or {}
        return list(result.get("value") or [])

    def get_account_info(self, pubkey: str) -> Optional[Dict[str, Any]]:
        """{owner, lamports, data: [base64, "base64"], ...} or None if absent."""
        data = self._post("getAccountInfo", [pubkey, {"encoding": "base64"}])
        result = data.get("result") or {}
        return result.get("value")

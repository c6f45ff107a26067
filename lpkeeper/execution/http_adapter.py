"""
HTTP/2 client for a per-variant adapter service.

The adapter service owns protocol encoding and signing; this client only
moves typed requests and receipts. Each variant is served under its own path
prefix (`/bucketed-book`, `/tick-range`, `/share-vault`).
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from lpkeeper.core.errors import LedgerUnavailable, StaleLedgerRead
from lpkeeper.core.models import Intent, ProtocolVariant
from lpkeeper.execution.adapters import (
    ExecutionAdapter,
    LedgerReading,
    PoolState,
    SubmitReceipt,
    WalletBalance,
)

T = TypeVar("T")


class HttpExecutionAdapter(ExecutionAdapter):
    def __init__(
        self,
        variant: ProtocolVariant,
        base_url: str,
        timeout: float = 10.0,
        submit_timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
        auth_token: Optional[str] = None,
    ) -> None:
        self.variant = variant
        self.base_url = base_url.rstrip("/")
        self._prefix = f"/{variant.value}"
        self._submit_timeout = submit_timeout
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else None
        # A shared client passed in is not closed here
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout, headers=headers)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def read_pool(self, pool_id: str) -> PoolState:
        data = await self._post("/pool", {"pool_id": pool_id})
        return self._decode("/pool", PoolState.from_dict, data)

    async def read_position(self, pool_id: str, owner: str) -> LedgerReading:
        data = await self._post("/position", {"pool_id": pool_id, "owner": owner})
        return self._decode("/position", LedgerReading.from_dict, data)

    async def discover_positions(self, owner: str) -> List[LedgerReading]:
        data = await self._post("/discover", {"owner": owner})
        items = data.get("positions", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise LedgerUnavailable(f"{self.variant.value}/discover: expected a list, got {type(items).__name__}")
        return [self._decode("/discover", LedgerReading.from_dict, d) for d in items]

    async def wallet_balance(self, owner: str) -> WalletBalance:
        data = await self._post("/wallet", {"owner": owner})
        return self._decode("/wallet", WalletBalance.from_dict, data)

    async def lookup(self, intent_id: str) -> Optional[SubmitReceipt]:
        data = await self._post("/intent/lookup", {"intent_id": intent_id})
        if not data or not isinstance(data, dict) or not data.get("found"):
            return None
        return self._decode("/intent/lookup", SubmitReceipt.from_dict, data.get("receipt"))

    async def submit(self, intent: Intent) -> SubmitReceipt:
        payload = {
            "intent_id": intent.intent_id,
            "correlation_id": intent.correlation_id,
            "kind": intent.kind.value,
            "pool_id": intent.pool_id,
            "position_id": intent.position_id,
            "predecessor_id": intent.predecessor_id,
            "params": intent.params,
        }
        data = await self._post("/intent/submit", payload, timeout=self._submit_timeout)
        return self._decode("/intent/submit", SubmitReceipt.from_dict, data)

    async def _post(self, path: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        url = f"{self._prefix}{path}"
        try:
            if timeout is not None:
                resp = await self.client.post(url, json=payload, timeout=timeout)
            else:
                resp = await self.client.post(url, json=payload)
        except httpx.TransportError as exc:
            raise LedgerUnavailable(f"{self.variant.value}{path}: {exc}") from exc
        if resp.status_code == 409:
            raise StaleLedgerRead(f"{self.variant.value}{path}: {resp.text[:200]}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise LedgerUnavailable(f"{self.variant.value}{path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            # rejected requests are retried like outages; a submit ends DROPPED after lookup
            raise LedgerUnavailable(f"{self.variant.value}{path}: HTTP {resp.status_code} {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise LedgerUnavailable(f"{self.variant.value}{path}: undecodable body: {exc}") from exc
        # unwrap {status: 'ok', response: {...}}
        if isinstance(data, dict) and isinstance(data.get("response"), (dict, list)):
            return data["response"]
        return data

    def _decode(self, path: str, parse: Callable[[Dict[str, Any]], T], data: Any) -> T:
        """Malformed payloads read as an unavailable ledger, never as a crash."""
        if not isinstance(data, dict):
            raise LedgerUnavailable(f"{self.variant.value}{path}: expected an object, got {type(data).__name__}")
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerUnavailable(f"{self.variant.value}{path}: malformed payload: {exc!r}") from exc

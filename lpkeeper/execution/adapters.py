"""
Execution and ledger-read interfaces, one implementation per protocol variant.

The engine never branches on "which DEX": it asks the AdapterRegistry for the
adapter of a position's ProtocolVariant and talks to it through the
ExecutionAdapter surface below. Adding a protocol means adding a variant and
registering its adapter.

Read contract:
    read_position() returns a LedgerReading whose zero balance means "the
    ledger says zero". Unreachable or stale ledgers raise LedgerUnavailable /
    StaleLedgerRead instead; they never masquerade as zero.

Write contract:
    submit() executes one Intent and returns a SubmitReceipt with a terminal
    outcome. lookup() answers whether an intent id was already submitted, so
    a retried submission never executes twice.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from lpkeeper.core.errors import UnsupportedProtocol
from lpkeeper.core.json_utils import decode_int, encode_int
from lpkeeper.core.models import Intent, ProtocolVariant, TokenInfo, TxOutcome


@dataclass
class PoolState:
    """Current on-chain state of one pool."""
    pool_id: str
    variant: ProtocolVariant
    active_id: Optional[int] = None       # active bucket/tick; None for share vaults
    price: float = 0.0                     # token_b per token_a, human units
    price_a_usd: float = 0.0
    price_b_usd: float = 0.0
    reserve_a_raw: int = 0                 # active bucket reserves
    reserve_b_raw: int = 0
    bin_step_bps: Optional[float] = None
    tick_spacing: Optional[int] = None
    token_a: Optional[TokenInfo] = None
    token_b: Optional[TokenInfo] = None
    read_at_ms: int = 0

    def in_range(self, lower_id: Optional[int], upper_id: Optional[int]) -> bool:
        if self.variant == ProtocolVariant.SHARE_VAULT or self.active_id is None:
            return True
        if lower_id is None or upper_id is None:
            return False
        return lower_id <= self.active_id <= upper_id

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PoolState":
        return cls(
            pool_id=str(d["pool_id"]),
            variant=ProtocolVariant(d["variant"]),
            active_id=d.get("active_id"),
            price=float(d.get("price", 0.0)),
            price_a_usd=float(d.get("price_a_usd", 0.0)),
            price_b_usd=float(d.get("price_b_usd", 0.0)),
            reserve_a_raw=decode_int(d.get("reserve_a")),
            reserve_b_raw=decode_int(d.get("reserve_b")),
            bin_step_bps=d.get("bin_step_bps"),
            tick_spacing=d.get("tick_spacing"),
            token_a=TokenInfo.from_dict(d["token_a"]) if d.get("token_a") else None,
            token_b=TokenInfo.from_dict(d["token_b"]) if d.get("token_b") else None,
            read_at_ms=int(d.get("read_at_ms", 0)),
        )


@dataclass
class LedgerReading:
    """Authoritative balance/range state of one position."""
    pool_id: str
    owner: str
    shares: int = 0
    amount_a_raw: int = 0
    amount_b_raw: int = 0
    value_usd: float = 0.0
    lower_id: Optional[int] = None
    upper_id: Optional[int] = None
    read_at_ms: int = 0
    # Identity details, filled by discovery so an untracked position can be adopted
    variant: Optional[ProtocolVariant] = None
    protocol: str = ""
    token_a: Optional[TokenInfo] = None
    token_b: Optional[TokenInfo] = None
    bin_step_bps: Optional[float] = None
    tick_spacing: Optional[int] = None

    @property
    def has_balance(self) -> bool:
        return self.shares > 0 or self.amount_a_raw > 0 or self.amount_b_raw > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "owner": self.owner,
            "shares": encode_int(self.shares),
            "amount_a": encode_int(self.amount_a_raw),
            "amount_b": encode_int(self.amount_b_raw),
            "value_usd": self.value_usd,
            "lower_id": self.lower_id,
            "upper_id": self.upper_id,
            "read_at_ms": self.read_at_ms,
            "variant": self.variant.value if self.variant else None,
            "protocol": self.protocol,
            "token_a": self.token_a.to_dict() if self.token_a else None,
            "token_b": self.token_b.to_dict() if self.token_b else None,
            "bin_step_bps": self.bin_step_bps,
            "tick_spacing": self.tick_spacing,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LedgerReading":
        return cls(
            pool_id=str(d["pool_id"]),
            owner=str(d["owner"]),
            shares=decode_int(d.get("shares")),
            amount_a_raw=decode_int(d.get("amount_a")),
            amount_b_raw=decode_int(d.get("amount_b")),
            value_usd=float(d.get("value_usd", 0.0)),
            lower_id=d.get("lower_id"),
            upper_id=d.get("upper_id"),
            read_at_ms=int(d.get("read_at_ms", 0)),
            variant=ProtocolVariant(d["variant"]) if d.get("variant") else None,
            protocol=str(d.get("protocol", "")),
            token_a=TokenInfo.from_dict(d["token_a"]) if d.get("token_a") else None,
            token_b=TokenInfo.from_dict(d["token_b"]) if d.get("token_b") else None,
            bin_step_bps=d.get("bin_step_bps"),
            tick_spacing=d.get("tick_spacing"),
        )


@dataclass
class WalletBalance:
    owner: str
    value_usd: float
    balances_raw: Dict[str, int] = field(default_factory=dict)  # token address -> raw amount

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WalletBalance":
        return cls(
            owner=str(d["owner"]),
            value_usd=float(d.get("value_usd", 0.0)),
            balances_raw={str(k): decode_int(v) for k, v in (d.get("balances") or {}).items()},
        )


@dataclass
class SubmitReceipt:
    """Terminal result of one submitted intent."""
    outcome: TxOutcome
    tx_hash: Optional[str] = None
    gas_cost_usd: float = 0.0
    error: Optional[str] = None
    position: Optional[LedgerReading] = None  # post-state, when the adapter read it back

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SubmitReceipt":
        return cls(
            outcome=TxOutcome(d["outcome"]),
            tx_hash=d.get("tx_hash"),
            gas_cost_usd=float(d.get("gas_usd", 0.0)),
            error=d.get("error"),
            position=LedgerReading.from_dict(d["position"]) if d.get("position") else None,
        )


class ExecutionAdapter(ABC):
    """Common read/execute surface for one protocol variant."""

    variant: ProtocolVariant

    @abstractmethod
    async def read_pool(self, pool_id: str) -> PoolState:
        ...

    @abstractmethod
    async def read_position(self, pool_id: str, owner: str) -> LedgerReading:
        ...

    @abstractmethod
    async def discover_positions(self, owner: str) -> List[LedgerReading]:
        ...

    @abstractmethod
    async def wallet_balance(self, owner: str) -> WalletBalance:
        ...

    @abstractmethod
    async def lookup(self, intent_id: str) -> Optional[SubmitReceipt]:
        """Receipt of an intent already submitted under this id, else None."""

    @abstractmethod
    async def submit(self, intent: Intent) -> SubmitReceipt:
        ...

    async def close(self) -> None:
        return None


class AdapterRegistry:
    """
    Closed mapping ProtocolVariant -> ExecutionAdapter.

    Usage:
        registry = AdapterRegistry()
        registry.register(HttpExecutionAdapter(ProtocolVariant.BUCKETED_BOOK, url))
        adapter = registry.get(position.variant)
    """

    def __init__(self) -> None:
        self._adapters: Dict[ProtocolVariant, ExecutionAdapter] = {}

    def register(self, adapter: ExecutionAdapter) -> None:
        self._adapters[adapter.variant] = adapter

    def get(self, variant: ProtocolVariant) -> ExecutionAdapter:
        adapter = self._adapters.get(variant)
        if adapter is None:
            raise UnsupportedProtocol(f"no adapter registered for {variant.value}")
        return adapter

    def supports(self, variant: ProtocolVariant) -> bool:
        return variant in self._adapters

    def all(self) -> List[ExecutionAdapter]:
        return list(self._adapters.values())

    async def wallet_balance(self, owner: str) -> WalletBalance:
        """The wallet is shared by every variant; the first adapter answers."""
        if not self._adapters:
            raise UnsupportedProtocol("no adapters registered")
        return await next(iter(self._adapters.values())).wallet_balance(owner)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()

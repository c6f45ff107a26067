"""
Shared fixtures and fakes.

FakeAdapter stands in for a per-protocol adapter service: pool states,
ledger readings and receipts are plain dicts/lists the test edits directly.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Union

import pytest

from lpkeeper.core.errors import LedgerUnavailable
from lpkeeper.core.models import (
    CapitalSource,
    EngineState,
    Intent,
    IntentKind,
    Position,
    PositionStatus,
    ProtocolVariant,
    RankedPool,
    RankingSnapshot,
    StrategyConfig,
    TokenInfo,
    TxOutcome,
    make_position_id,
)
from lpkeeper.execution.adapters import (
    AdapterRegistry,
    ExecutionAdapter,
    LedgerReading,
    PoolState,
    SubmitReceipt,
    WalletBalance,
)
from lpkeeper.state.position_store import PositionStore, PositionStoreConfig

OWNER = "0x00000000000000000000000000000000000000Aa"
WETH = TokenInfo(address="0xweth", symbol="WETH", decimals=18)
USDC = TokenInfo(address="0xusdc", symbol="USDC", decimals=6)

DEPOSIT_KINDS = (IntentKind.DEPOSIT, IntentKind.REBALANCE, IntentKind.ROTATE_ENTER)


def make_position(
    pool_id: str = "pool-1",
    value_usd: float = 1000.0,
    variant: ProtocolVariant = ProtocolVariant.BUCKETED_BOOK,
    source: CapitalSource = CapitalSource.STRATEGY,
    status: PositionStatus = PositionStatus.ACTIVE,
    lower_id: Optional[int] = 90,
    upper_id: Optional[int] = 110,
    **kwargs,
) -> Position:
    pos = Position(
        position_id=make_position_id(pool_id, OWNER),
        pool_id=pool_id,
        owner=OWNER,
        variant=variant,
        token_a=WETH,
        token_b=USDC,
        protocol="fakeswap",
        bin_step_bps=25 if variant == ProtocolVariant.BUCKETED_BOOK else None,
        tick_spacing=10 if variant == ProtocolVariant.TICK_RANGE else None,
        lower_id=lower_id,
        upper_id=upper_id,
        amount_a_raw=250_000_000_000_000_000,
        amount_b_raw=500_000_000,
        value_usd=value_usd,
        source=source,
        status=status,
        range_min_pct=-5.0,
        range_max_pct=5.0,
    )
    for key, value in kwargs.items():
        setattr(pos, key, value)
    return pos


def reading_for(pos: Position, **overrides) -> LedgerReading:
    """Ledger reading that agrees with `pos`."""
    reading = LedgerReading(
        pool_id=pos.pool_id,
        owner=pos.owner,
        shares=pos.shares,
        amount_a_raw=pos.amount_a_raw,
        amount_b_raw=pos.amount_b_raw,
        value_usd=pos.value_usd,
        lower_id=pos.lower_id,
        upper_id=pos.upper_id,
    )
    for key, value in overrides.items():
        setattr(reading, key, value)
    return reading


def make_pool_state(
    pool_id: str = "pool-1",
    active_id: Optional[int] = 100,
    variant: ProtocolVariant = ProtocolVariant.BUCKETED_BOOK,
) -> PoolState:
    return PoolState(
        pool_id=pool_id,
        variant=variant,
        active_id=active_id if variant != ProtocolVariant.SHARE_VAULT else None,
        price=2000.0,
        price_a_usd=2000.0,
        price_b_usd=1.0,
        reserve_a_raw=10 ** 18,
        reserve_b_raw=2000 * 10 ** 6,
        bin_step_bps=25 if variant == ProtocolVariant.BUCKETED_BOOK else None,
        tick_spacing=10 if variant == ProtocolVariant.TICK_RANGE else None,
        token_a=WETH,
        token_b=USDC,
    )


def make_ranked(
    pool_id: str,
    metric: float,
    variant: ProtocolVariant = ProtocolVariant.BUCKETED_BOOK,
    tvl_usd: float = 1_000_000.0,
    supported: bool = True,
) -> RankedPool:
    return RankedPool(
        pool_id=pool_id,
        address=pool_id,
        protocol="fakeswap",
        variant=variant,
        pair="WETH/USDC",
        apr=metric,
        real_return=metric,
        tvl_usd=tvl_usd,
        token_a=WETH,
        token_b=USDC,
        bin_step_bps=25 if variant == ProtocolVariant.BUCKETED_BOOK else None,
        tick_spacing=10 if variant == ProtocolVariant.TICK_RANGE else None,
        supported=supported,
    )


def make_snapshot(pools: List[RankedPool], at_ms: int, epoch_ends_at_ms: Optional[int] = None) -> RankingSnapshot:
    return RankingSnapshot(fetched_at_ms=at_ms, source_ts_ms=at_ms, pools=pools, epoch_ends_at_ms=epoch_ends_at_ms)


class FakeAdapter(ExecutionAdapter):
    """
    In-memory adapter.

    receipts: scripted submit results, consumed in order; an exception
    instance is raised instead of returned. When empty, submits succeed.
    With `apply_submits` a successful submit also updates `readings` so the
    next reconcile agrees with what was executed.
    """

    def __init__(self, variant: ProtocolVariant = ProtocolVariant.BUCKETED_BOOK, apply_submits: bool = True) -> None:
        self.variant = variant
        self.apply_submits = apply_submits
        self.pools: Dict[str, PoolState] = {}
        self.readings: Dict[str, LedgerReading] = {}
        self.discovered: List[LedgerReading] = []
        self.wallet = WalletBalance(owner=OWNER, value_usd=10_000.0)
        self.receipts: List[Union[SubmitReceipt, Exception]] = []
        self.landed: Dict[str, SubmitReceipt] = {}
        self.read_errors: Dict[str, Exception] = {}
        self.discover_error: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.submitted: List[Intent] = []
        self.lookups: List[str] = []
        self.gas_usd = 0.1

    async def read_pool(self, pool_id: str) -> PoolState:
        if pool_id in self.read_errors:
            raise self.read_errors[pool_id]
        if pool_id not in self.pools:
            raise LedgerUnavailable(f"unknown pool {pool_id}")
        return self.pools[pool_id]

    async def read_position(self, pool_id: str, owner: str) -> LedgerReading:
        if pool_id in self.read_errors:
            raise self.read_errors[pool_id]
        return self.readings.get(pool_id) or LedgerReading(pool_id=pool_id, owner=owner)

    async def discover_positions(self, owner: str) -> List[LedgerReading]:
        if self.discover_error is not None:
            raise self.discover_error
        return list(self.discovered)

    async def wallet_balance(self, owner: str) -> WalletBalance:
        return self.wallet

    async def lookup(self, intent_id: str) -> Optional[SubmitReceipt]:
        self.lookups.append(intent_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.landed.get(intent_id)

    async def submit(self, intent: Intent) -> SubmitReceipt:
        self.submitted.append(intent)
        if self.receipts:
            scripted = self.receipts.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            receipt = scripted
        else:
            receipt = SubmitReceipt(outcome=TxOutcome.SUCCESS, tx_hash=f"0x{len(self.submitted):04x}",
                                    gas_cost_usd=self.gas_usd)
        if receipt.outcome == TxOutcome.SUCCESS:
            self.landed[intent.intent_id] = receipt
            if self.apply_submits:
                self._apply(intent)
        return receipt

    def _apply(self, intent: Intent) -> None:
        if intent.kind in DEPOSIT_KINDS:
            p = intent.params
            self.readings[intent.pool_id] = LedgerReading(
                pool_id=intent.pool_id,
                owner=OWNER,
                amount_a_raw=int(p.get("amount_a", 0)),
                amount_b_raw=int(p.get("amount_b", 0)),
                value_usd=float(p.get("value_usd", 0.0)),
                lower_id=p.get("lower_id"),
                upper_id=p.get("upper_id"),
            )
        else:
            self.readings.pop(intent.pool_id, None)

    def submitted_kinds(self) -> List[IntentKind]:
        return [i.kind for i in self.submitted]


def make_registry(*adapters: ExecutionAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    for adapter in adapters:
        registry.register(adapter)
    return registry


async def seed(
    store: PositionStore,
    *positions: Position,
    strategy: Optional[StrategyConfig] = None,
    **control,
) -> EngineState:
    """Commit `positions` (and optional strategy/control switches) into the store."""

    def _fold(state: EngineState) -> None:
        for pos in positions:
            state.positions[pos.position_id] = pos
        if strategy is not None:
            state.strategy = strategy
        for key, value in control.items():
            setattr(state.control, key, value)

    return await store.commit(_fold, reason="test_seed")


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(adapter: FakeAdapter) -> AdapterRegistry:
    return make_registry(adapter)


@pytest.fixture
def store(tmp_path) -> PositionStore:
    return PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False))

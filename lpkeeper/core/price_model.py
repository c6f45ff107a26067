"""
PriceModel: pure conversions between linear prices and discrete buckets.

Two discretizations are supported:

- Bucketed-book pools: bucket id = round(base + ln(p_adj) / ln(1 + s/10000)),
  with s the bucket width in basis points and base = 2**23.
- Tick-range pools: the same law with 1.0001 as the per-step multiplier,
  base 0, signed ids snapped to the pool's tick spacing.

p_adj is the human price divided by 10^(decimals_a - decimals_b), i.e. the
price expressed in raw base units.

Nothing here performs I/O; every function is deterministic.
"""

from __future__ import annotations

import math
from decimal import ROUND_DOWN, Decimal
from typing import Tuple

from lpkeeper.core.errors import InvalidPrice

BUCKETED_BASE_INDEX = 2 ** 23
TICK_MULTIPLIER = 1.0001
MIN_TICK = -887272
MAX_TICK = 887272
BPS = 10_000


def _check_price(price: float) -> None:
    if price is None or not math.isfinite(price) or price <= 0:
        raise InvalidPrice(f"price must be positive and finite, got {price!r}")


def _check_width(bin_step_bps: float) -> None:
    if bin_step_bps is None or bin_step_bps <= 0:
        raise ValueError(f"bucket width must be > 0 bps, got {bin_step_bps!r}")


def decimal_scale(decimals_a: int, decimals_b: int) -> float:
    """10^(decimals_a - decimals_b)."""
    return 10.0 ** (decimals_a - decimals_b)


def step_multiplier(bin_step_bps: float) -> float:
    return 1.0 + bin_step_bps / BPS


# ----- bucketed-book -----

def price_to_bucket(
    price: float,
    bin_step_bps: float,
    decimals_a: int,
    decimals_b: int,
    base_index: int = BUCKETED_BASE_INDEX,
) -> int:
    """Bucket id holding `price`."""
    _check_price(price)
    _check_width(bin_step_bps)
    adjusted = price / decimal_scale(decimals_a, decimals_b)
    return int(round(base_index + math.log(adjusted) / math.log(step_multiplier(bin_step_bps))))


def bucket_to_price(
    bucket_id: int,
    bin_step_bps: float,
    decimals_a: int,
    decimals_b: int,
    base_index: int = BUCKETED_BASE_INDEX,
) -> float:
    """Price at the lower edge of `bucket_id`; exact inverse of price_to_bucket."""
    _check_width(bin_step_bps)
    return step_multiplier(bin_step_bps) ** (bucket_id - base_index) * decimal_scale(decimals_a, decimals_b)


# ----- tick-range -----

def snap_to_spacing(tick: int, tick_spacing: int) -> int:
    """Floor `tick` to a multiple of `tick_spacing` (toward negative infinity)."""
    if tick_spacing <= 0:
        raise ValueError(f"tick spacing must be > 0, got {tick_spacing!r}")
    return (tick // tick_spacing) * tick_spacing


def price_to_tick(price: float, decimals_a: int, decimals_b: int, tick_spacing: int = 1) -> int:
    """Tick holding `price`, snapped to the pool's tick spacing."""
    _check_price(price)
    adjusted = price / decimal_scale(decimals_a, decimals_b)
    tick = int(round(math.log(adjusted) / math.log(TICK_MULTIPLIER)))
    if tick < MIN_TICK or tick > MAX_TICK:
        raise InvalidPrice(f"price {price!r} maps to tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    return snap_to_spacing(tick, tick_spacing)


def tick_to_price(tick: int, decimals_a: int, decimals_b: int) -> float:
    if tick < MIN_TICK or tick > MAX_TICK:
        raise InvalidPrice(f"tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    return TICK_MULTIPLIER ** tick * decimal_scale(decimals_a, decimals_b)


# ----- ranges -----

def bucket_range_for_percent(
    active_id: int,
    bin_step_bps: float,
    min_pct: float,
    max_pct: float,
) -> Tuple[int, int]:
    """
    Inclusive (lower_id, upper_id) covering min_pct..max_pct around the active bucket.

    min_pct is the downside (e.g. -50), max_pct the upside (e.g. +50). The range
    always contains the active bucket.
    """
    _check_width(bin_step_bps)
    if min_pct <= -100 or min_pct > 0:
        raise ValueError(f"min_pct must be in (-100, 0], got {min_pct!r}")
    if max_pct < 0:
        raise ValueError(f"max_pct must be >= 0, got {max_pct!r}")
    log_step = math.log(step_multiplier(bin_step_bps))
    lower = active_id + math.floor(math.log(1 + min_pct / 100.0) / log_step)
    upper = active_id + math.ceil(math.log(1 + max_pct / 100.0) / log_step)
    return lower, upper


def tick_range_for_percent(
    active_tick: int,
    tick_spacing: int,
    min_pct: float,
    max_pct: float,
) -> Tuple[int, int]:
    """Tick-range counterpart of bucket_range_for_percent, snapped to spacing."""
    if min_pct <= -100 or min_pct > 0:
        raise ValueError(f"min_pct must be in (-100, 0], got {min_pct!r}")
    if max_pct < 0:
        raise ValueError(f"max_pct must be >= 0, got {max_pct!r}")
    log_step = math.log(TICK_MULTIPLIER)
    lower = snap_to_spacing(active_tick + math.floor(math.log(1 + min_pct / 100.0) / log_step), tick_spacing)
    upper_raw = active_tick + math.ceil(math.log(1 + max_pct / 100.0) / log_step)
    upper = snap_to_spacing(upper_raw, tick_spacing)
    if upper < upper_raw:
        upper += tick_spacing
    if upper == lower:
        upper += tick_spacing
    return max(lower, snap_to_spacing(MIN_TICK, tick_spacing) + tick_spacing), min(upper, snap_to_spacing(MAX_TICK, tick_spacing))


def price_range_for_percent(price: float, min_pct: float, max_pct: float) -> Tuple[float, float]:
    _check_price(price)
    return price * (1 + min_pct / 100.0), price * (1 + max_pct / 100.0)


# ----- decimals -----

def to_raw_amount(amount: float | Decimal | str, decimals: int) -> int:
    """Human token amount to integer base units, truncating toward zero."""
    value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def from_raw_amount(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)) / (Decimal(10) ** decimals)

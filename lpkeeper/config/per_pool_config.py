"""Load per-pool policy overrides from YAML.

Optional file path via env `LPK_PER_POOL_CONFIG`, default `configs/per_pool.yaml`.
The file maps pool id -> overrides, e.g.:

    0xpool1:
      range_min_pct: -10
      range_max_pct: 15
      cooldown_sec: 7200
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

KNOWN_KEYS = ("range_min_pct", "range_max_pct", "cooldown_sec", "allocation_pct")


@dataclass(frozen=True)
class PoolOverride:
    range_min_pct: Optional[float] = None
    range_max_pct: Optional[float] = None
    cooldown_sec: Optional[float] = None
    allocation_pct: Optional[float] = None

    @classmethod
    def from_dict(cls, pool_id: str, d: Dict[str, Any]) -> "PoolOverride":
        unknown = set(d) - set(KNOWN_KEYS)
        if unknown:
            raise ValueError(f"per-pool config for {pool_id}: unknown keys {sorted(unknown)}")
        values = {k: float(d[k]) for k in KNOWN_KEYS if d.get(k) is not None}
        out = cls(**values)
        if out.range_min_pct is not None and not -100 < out.range_min_pct <= 0:
            raise ValueError(f"per-pool config for {pool_id}: range_min_pct must be in (-100, 0]")
        if out.range_max_pct is not None and out.range_max_pct < 0:
            raise ValueError(f"per-pool config for {pool_id}: range_max_pct must be >= 0")
        if out.cooldown_sec is not None and out.cooldown_sec < 0:
            raise ValueError(f"per-pool config for {pool_id}: cooldown_sec must be >= 0")
        if out.allocation_pct is not None and not 0 <= out.allocation_pct <= 100:
            raise ValueError(f"per-pool config for {pool_id}: allocation_pct must be in [0, 100]")
        return out


def load_per_pool_overrides(path: str | None = None) -> Dict[str, PoolOverride]:
    if path is None:
        path = os.getenv("LPK_PER_POOL_CONFIG", "configs/per_pool.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping of pool id -> overrides")
    return {str(k): PoolOverride.from_dict(str(k), v) for k, v in data.items() if isinstance(v, dict)}


def for_pool(overrides: Dict[str, PoolOverride], pool_id: str) -> PoolOverride:
    return overrides.get(pool_id) or overrides.get(pool_id.lower()) or PoolOverride()

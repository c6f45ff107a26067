"""
Fast JSON utilities backed by orjson.

Usage:
    from lpkeeper.core.json_utils import dumps, loads

    log.info(dumps({"event": "cycle_start", "cycle": 12}))

orjson rejects integers wider than 64 bits, so raw on-chain amounts and
distribution weights must be encoded with `encode_int` before serialization.
"""

from __future__ import annotations

from typing import Any, Optional

import orjson


def dumps(obj: Any) -> str:
    """JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_bytes(obj: Any, indent: bool = False) -> bytes:
    """JSON encode to bytes (used for the persisted state document)."""
    option = orjson.OPT_SORT_KEYS
    if indent:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, option=option)


def loads(s: str | bytes) -> Any:
    """JSON decode."""
    return orjson.loads(s)


def encode_int(value: Optional[int]) -> Optional[str]:
    """Big integer to decimal string."""
    if value is None:
        return None
    return str(int(value))


def decode_int(value: Any, default: int = 0) -> int:
    """Decimal string (or int) back to int."""
    if value is None or value == "":
        return default
    return int(value)

"""
State management package.

This package contains the durable position store and the tx log archive.
"""

from lpkeeper.state.archive import TxArchive
from lpkeeper.state.position_store import PositionStore, PositionStoreConfig

__all__ = [
    "TxArchive",
    "PositionStore",
    "PositionStoreConfig",
]

"""
Market data package.

This package contains the pool ranking feed.
"""

from lpkeeper.market_data.ranking_feed import FeedHealth, RankingFeed, RankingFeedConfig

__all__ = [
    "FeedHealth",
    "RankingFeed",
    "RankingFeedConfig",
]

"""
lpkeeper - autonomous liquidity position manager.
"""

__version__ = "0.1.0"

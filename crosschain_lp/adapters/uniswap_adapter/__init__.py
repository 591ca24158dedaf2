"""Uniswap v3 Adapter - pool reads, swaps and position management calls."""

from .adapter import PoolState, UniswapV3Adapter

__all__ = ["PoolState", "UniswapV3Adapter"]

"""
外部API連携サービス
"""

from .price_source import (
    CoinGeckoPriceSource,
    PriceSourceError,
)

__all__ = [
    "CoinGeckoPriceSource",
    "PriceSourceError",
]

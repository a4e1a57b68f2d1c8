"""Price observation schemas"""
from datetime import datetime

from pydantic import Field, field_validator

from .base import BaseSchema


class PriceObservation(BaseSchema):
    """1銘柄の最新価格スナップショット（永続化しない）"""
    symbol: str = Field(..., max_length=20)
    price: float
    change_24h: float = 0.0
    volume_24h: float = 0.0
    market_cap: float = 0.0
    observed_at: datetime

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

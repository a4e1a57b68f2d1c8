"""
Alert Model - アラートテーブル
"""
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .base import Base

if TYPE_CHECKING:
    from .user import User


class Alert(Base):
    """アラートテーブル"""
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # 大文字で保存
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # "price_above", "volume_spike", etc.
    condition: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    is_triggered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    # 繰り返しアラートの再アーム予定時刻
    rearm_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    notifications: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    priority: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)
    repeat_interval: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 分、0は繰り返しなし
    max_triggers: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    price_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    execution_log: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="alerts")

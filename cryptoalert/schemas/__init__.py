"""
Pydantic Schemas for CryptoAlert Application
"""

from .base import BaseSchema
from .price import PriceObservation
from .user import UserContact
from .alert import (
    PRICE_HISTORY_LIMIT,
    AlertType,
    Timeframe,
    Priority,
    ExecutionAction,
    AlertCondition,
    ChannelSettings,
    NotificationSettings,
    PriceHistoryEntry,
    ExecutionLogEntry,
    AlertBase,
    AlertState,
    ChannelPreference,
    NotificationPreferences,
    AlertCreate,
    AlertUpdate,
    AlertResponse,
    AlertListResponse,
    MessageResponse,
)
from .notification import (
    ChannelName,
    DeliveryStatus,
    ChannelOutcome,
    NotificationResult,
)

__all__ = [
    "BaseSchema",
    "PriceObservation",
    "UserContact",
    "PRICE_HISTORY_LIMIT",
    "AlertType",
    "Timeframe",
    "Priority",
    "ExecutionAction",
    "AlertCondition",
    "ChannelSettings",
    "NotificationSettings",
    "PriceHistoryEntry",
    "ExecutionLogEntry",
    "AlertBase",
    "AlertState",
    "ChannelPreference",
    "NotificationPreferences",
    "AlertCreate",
    "AlertUpdate",
    "AlertResponse",
    "AlertListResponse",
    "MessageResponse",
    "ChannelName",
    "DeliveryStatus",
    "ChannelOutcome",
    "NotificationResult",
]

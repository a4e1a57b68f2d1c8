"""Notification schemas"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from .base import BaseSchema


class ChannelName(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # レート制限・通知先なし
    FAILED = "failed"
    DISABLED = "disabled"  # アラートまたはユーザー設定で無効


class ChannelOutcome(BaseSchema):
    """1チャネル分の送信結果"""
    channel: ChannelName
    status: DeliveryStatus
    destination: Optional[str] = None
    sent_at: Optional[datetime] = None
    message_id: Optional[str] = None
    reason: Optional[str] = None


class NotificationResult(BaseSchema):
    """トリガー1回分の全チャネルの送信結果"""
    alert_id: str
    title: str
    message: str
    outcomes: Dict[ChannelName, ChannelOutcome] = Field(default_factory=dict)

    def outcome(self, channel: ChannelName) -> Optional[ChannelOutcome]:
        return self.outcomes.get(channel)

    def sent_channels(self) -> List[ChannelName]:
        return [
            name for name, outcome in self.outcomes.items()
            if outcome.status == DeliveryStatus.SENT
        ]

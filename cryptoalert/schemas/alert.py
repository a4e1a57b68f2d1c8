"""Alert schemas"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from .base import BaseSchema
from .price import PriceObservation
from .user import UserContact

# 価格履歴の保持件数（古いものから捨てる）
PRICE_HISTORY_LIMIT = 100

# 更新時に null を指定するとクリアできるフィールド
NULLABLE_UPDATE_FIELDS = {"expires_at", "description"}


class AlertType(str, Enum):
    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    PRICE_CHANGE = "price_change"
    VOLUME_SPIKE = "volume_spike"
    MARKET_CAP_CHANGE = "market_cap_change"


class Timeframe(str, Enum):
    H1 = "1h"
    H24 = "24h"
    D7 = "7d"
    D30 = "30d"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExecutionAction(str, Enum):
    CREATED = "created"
    TRIGGERED = "triggered"
    EMAIL_SENT = "email_sent"
    SMS_SENT = "sms_sent"
    PUSH_SENT = "push_sent"
    PAUSED = "paused"
    RESUMED = "resumed"
    DELETED = "deleted"


class AlertCondition(BaseSchema):
    """アラート種別ごとに参照するフィールドが異なる"""
    target_price: Optional[float] = Field(None, ge=0)
    current_price: Optional[float] = Field(None, ge=0)
    percentage_change: Optional[float] = Field(None, ge=-100, le=1000)
    timeframe: Timeframe = Timeframe.H24
    volume_threshold: Optional[float] = Field(None, ge=0)
    market_cap_threshold: Optional[float] = Field(None, ge=0)


class ChannelSettings(BaseSchema):
    enabled: bool = True
    sent: bool = False
    sent_at: Optional[datetime] = None


class NotificationSettings(BaseSchema):
    email: ChannelSettings = Field(default_factory=lambda: ChannelSettings(enabled=True))
    sms: ChannelSettings = Field(default_factory=lambda: ChannelSettings(enabled=False))
    push: ChannelSettings = Field(default_factory=lambda: ChannelSettings(enabled=True))


class PriceHistoryEntry(BaseSchema):
    price: float
    timestamp: datetime
    source: str = "coingecko"


class ExecutionLogEntry(BaseSchema):
    action: ExecutionAction
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None
    success: bool = True
    error: Optional[str] = None


class AlertBase(BaseSchema):
    """アラートの共通フィールドと参照系メソッド"""
    id: str = Field(..., max_length=36)
    user_id: str = Field(..., max_length=36)
    symbol: str = Field(..., max_length=20)
    name: str = Field(..., max_length=100)
    alert_type: AlertType
    condition: AlertCondition = Field(default_factory=AlertCondition)
    is_active: bool = True
    is_triggered: bool = False
    trigger_count: int = Field(0, ge=0)
    last_triggered_at: Optional[datetime] = None
    rearm_at: Optional[datetime] = None
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    priority: Priority = Priority.MEDIUM
    repeat_interval: int = Field(0, ge=0)
    max_triggers: int = Field(1, ge=1)
    expires_at: Optional[datetime] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    price_history: List[PriceHistoryEntry] = Field(default_factory=list)
    execution_log: List[ExecutionLogEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def is_exhausted(self) -> bool:
        """最大トリガー回数に到達済みか"""
        return self.trigger_count >= self.max_triggers

    def compute_status(self, now: datetime) -> str:
        if not self.is_active:
            return "inactive"
        if self.is_triggered:
            return "triggered"
        if self.is_expired(now):
            return "expired"
        return "active"

    def compute_progress(self) -> float:
        """価格アラートの目標到達率（%）"""
        target = self.condition.target_price
        current = self.condition.current_price
        if not target or not current:
            return 0.0
        if self.alert_type == AlertType.PRICE_ABOVE:
            return min(100.0, current / target * 100)
        if self.alert_type == AlertType.PRICE_BELOW:
            return min(100.0, target / current * 100)
        return 0.0


class AlertState(AlertBase):
    """
    監視中アラートのインメモリ表現

    ActiveAlertIndex に載り、評価サイクルで更新されて AlertStore に保存される
    """
    user: Optional[UserContact] = None

    def log(
        self,
        action: ExecutionAction,
        now: datetime,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        self.execution_log.append(
            ExecutionLogEntry(
                action=action,
                timestamp=now,
                details=details,
                success=success,
                error=error,
            )
        )

    def add_price_history(
        self, price: float, timestamp: datetime, source: str = "coingecko"
    ) -> None:
        self.price_history.append(
            PriceHistoryEntry(price=price, timestamp=timestamp, source=source)
        )
        overflow = len(self.price_history) - PRICE_HISTORY_LIMIT
        if overflow > 0:
            del self.price_history[:overflow]

    def mark_triggered(self, observation: PriceObservation, now: datetime) -> None:
        self.is_triggered = True
        self.trigger_count += 1
        self.last_triggered_at = now
        self.condition.current_price = observation.price

        # 繰り返しアラートは評価サイクル内で再アームする
        if self.repeat_interval > 0:
            self.rearm_at = now + timedelta(minutes=self.repeat_interval)
        else:
            self.rearm_at = None

        self.log(
            ExecutionAction.TRIGGERED,
            now,
            details={
                "trigger_data": observation.model_dump(mode="json"),
                "trigger_count": self.trigger_count,
            },
        )

    def rearm_if_due(self, now: datetime) -> bool:
        """再アーム時刻を過ぎていれば triggered を解除する"""
        if not self.is_triggered or self.rearm_at is None:
            return False
        if now < self.rearm_at:
            return False
        self.is_triggered = False
        self.rearm_at = None
        return True

    def remains_armable(self) -> bool:
        """今後トリガーし得るか（ActiveAlertIndex に残すべきか）"""
        if not self.is_active or self.is_exhausted():
            return False
        return not self.is_triggered or self.rearm_at is not None

    def pause(self, now: datetime) -> None:
        self.is_active = False
        self.log(ExecutionAction.PAUSED, now)

    def resume(self, now: datetime) -> None:
        self.is_active = True
        self.is_triggered = False
        self.rearm_at = None
        self.log(ExecutionAction.RESUMED, now)

    def apply_update(self, data: "AlertUpdate") -> List[str]:
        """
        指定されたフィールドだけを反映する

        Returns:
            変更したフィールド名
        """
        changed = []
        for field in sorted(data.model_fields_set):
            value = getattr(data, field)
            if value is None and field not in NULLABLE_UPDATE_FIELDS:
                continue
            if field == "notifications":
                # 送信済みフラグは残し、指定チャネルの有効/無効だけ変える
                for channel in value.model_fields_set:
                    getattr(self.notifications, channel).enabled = getattr(value, channel).enabled
            elif field == "condition":
                self.condition = value.model_copy(
                    update={"current_price": self.condition.current_price}
                )
            else:
                setattr(self, field, value)
            changed.append(field)
        return changed


class ChannelPreference(BaseSchema):
    enabled: bool


class NotificationPreferences(BaseSchema):
    """作成時に指定できるのは有効/無効のみ"""
    email: ChannelPreference = Field(default_factory=lambda: ChannelPreference(enabled=True))
    sms: ChannelPreference = Field(default_factory=lambda: ChannelPreference(enabled=False))
    push: ChannelPreference = Field(default_factory=lambda: ChannelPreference(enabled=True))


class AlertCreate(BaseSchema):
    """Schema for creating an alert"""
    symbol: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=100)
    alert_type: AlertType
    condition: AlertCondition = Field(default_factory=AlertCondition)
    is_active: bool = True
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    priority: Priority = Priority.MEDIUM
    # 未指定なら DEFAULT_REPEAT_INTERVAL_MINUTES
    repeat_interval: Optional[int] = Field(None, ge=0)
    max_triggers: int = Field(1, ge=1)
    expires_at: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=500)
    tags: List[str] = Field(default_factory=list)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("expires_at")
    @classmethod
    def to_local_naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        """DBはnaiveなローカル時刻で扱うため変換する"""
        if v is not None and v.tzinfo is not None:
            return v.astimezone().replace(tzinfo=None)
        return v


class AlertUpdate(BaseSchema):
    """Schema for updating an alert（未指定のフィールドは変更しない）"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    condition: Optional[AlertCondition] = None
    is_active: Optional[bool] = None
    notifications: Optional[NotificationPreferences] = None
    priority: Optional[Priority] = None
    repeat_interval: Optional[int] = Field(None, ge=0)
    max_triggers: Optional[int] = Field(None, ge=1)
    expires_at: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = None

    @field_validator("expires_at")
    @classmethod
    def to_local_naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone().replace(tzinfo=None)
        return v


class AlertResponse(AlertBase):
    """Schema for alert response"""
    status: str
    progress: float

    @classmethod
    def from_state(cls, alert: AlertState, now: datetime) -> "AlertResponse":
        data = alert.model_dump(exclude={"user"})
        return cls(**data, status=alert.compute_status(now), progress=alert.compute_progress())


class AlertListResponse(BaseSchema):
    alerts: List[AlertResponse]
    count: int


class MessageResponse(BaseSchema):
    message: str

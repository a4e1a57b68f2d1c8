"""
通知サービス
トリガーしたアラートをメール・SMS・プッシュの各チャネルへ振り分け、
チャネルごとのレート制限と送信結果の記録を担当する
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from cryptoalert.schemas.alert import AlertState, ChannelSettings, ExecutionAction, Priority
from cryptoalert.schemas.notification import (
    ChannelName,
    ChannelOutcome,
    DeliveryStatus,
    NotificationResult,
)
from cryptoalert.schemas.price import PriceObservation
from cryptoalert.services.alert_messages import (
    alert_url,
    render_email_html,
    render_email_subject,
    render_message,
    render_title,
)
from cryptoalert.services.email_service import EmailService
from cryptoalert.services.rate_limiter import NotificationRateLimiter
from cryptoalert.services.sms_service import SmsService
from cryptoalert.services.webpush_service import PushResult, WebPushService

logger = logging.getLogger(__name__)

# (成功フラグ, メッセージID, エラー)
DeliveryResult = Tuple[bool, Optional[str], Optional[str]]

SENT_ACTIONS = {
    ChannelName.EMAIL: ExecutionAction.EMAIL_SENT,
    ChannelName.SMS: ExecutionAction.SMS_SENT,
    ChannelName.PUSH: ExecutionAction.PUSH_SENT,
}

# アラート優先度 → Web Push の Urgency
PUSH_URGENCY = {
    Priority.LOW: "low",
    Priority.HIGH: "high",
    Priority.CRITICAL: "high",
}


class NotificationChannel(ABC):
    """通知チャネルの共通処理（有効判定 → レート制限 → 送信）"""

    name: ChannelName

    def __init__(self, rate_limiter: NotificationRateLimiter, clock: Callable[[], datetime]):
        self.rate_limiter = rate_limiter
        self._clock = clock

    def channel_settings(self, alert: AlertState) -> ChannelSettings:
        return getattr(alert.notifications, self.name.value)

    @abstractmethod
    def user_opted_in(self, alert: AlertState) -> bool:
        """ユーザー側でこのチャネルを許可しているか"""

    @abstractmethod
    def destination(self, alert: AlertState) -> Optional[str]:
        """送信先（レート制限のキーにもなる）"""

    @abstractmethod
    def deliver(
        self,
        alert: AlertState,
        observation: PriceObservation,
        message: str,
        destination: str,
    ) -> DeliveryResult:
        """シンクへ送信する"""

    def _outcome(self, status: DeliveryStatus, **kwargs) -> ChannelOutcome:
        return ChannelOutcome(channel=self.name, status=status, **kwargs)

    def attempt(
        self, alert: AlertState, observation: PriceObservation, message: str
    ) -> ChannelOutcome:
        """1チャネル分の送信を試みる（例外は送出しない）"""
        if not self.channel_settings(alert).enabled:
            return self._outcome(DeliveryStatus.DISABLED, reason="disabled for alert")
        if alert.user is None:
            return self._outcome(DeliveryStatus.SKIPPED, reason="no user contact")
        if not self.user_opted_in(alert):
            return self._outcome(DeliveryStatus.DISABLED, reason="disabled by user")

        destination = self.destination(alert)
        if not destination:
            return self._outcome(DeliveryStatus.SKIPPED, reason="no destination")

        if not self.rate_limiter.check(self.name, destination):
            logger.warning(
                f"レート制限超過のためスキップ: channel={self.name.value}, "
                f"destination={destination}, alert={alert.id}"
            )
            return self._outcome(
                DeliveryStatus.SKIPPED,
                destination=destination,
                reason="rate limit exceeded",
            )

        try:
            success, message_id, error = self.deliver(alert, observation, message, destination)
        except Exception as e:
            logger.exception(f"通知送信で予期しないエラー: channel={self.name.value}, alert={alert.id}")
            success, message_id, error = False, None, str(e)

        if not success:
            return self._outcome(
                DeliveryStatus.FAILED, destination=destination, reason=error
            )

        self.rate_limiter.record(self.name, destination)
        return self._outcome(
            DeliveryStatus.SENT,
            destination=destination,
            sent_at=self._clock(),
            message_id=message_id,
        )


class EmailChannel(NotificationChannel):
    name = ChannelName.EMAIL

    def __init__(self, sink: EmailService, rate_limiter, clock):
        super().__init__(rate_limiter, clock)
        self.sink = sink

    def user_opted_in(self, alert: AlertState) -> bool:
        return alert.user.email_enabled

    def destination(self, alert: AlertState) -> Optional[str]:
        return alert.user.email

    def deliver(self, alert, observation, message, destination) -> DeliveryResult:
        result = self.sink.send_email(
            to=destination,
            subject=render_email_subject(alert),
            body=message,
            html=render_email_html(alert, observation, message),
        )
        return bool(result.get("success")), result.get("id"), result.get("error")


class SmsChannel(NotificationChannel):
    name = ChannelName.SMS

    def __init__(self, sink: SmsService, rate_limiter, clock):
        super().__init__(rate_limiter, clock)
        self.sink = sink

    def user_opted_in(self, alert: AlertState) -> bool:
        return alert.user.sms_enabled

    def destination(self, alert: AlertState) -> Optional[str]:
        return alert.user.phone_number

    def deliver(self, alert, observation, message, destination) -> DeliveryResult:
        result = self.sink.send_sms(to=destination, body=message)
        return bool(result.get("success")), result.get("id"), result.get("error")


class PushChannel(NotificationChannel):
    """プッシュはユーザーID単位でレート制限する"""

    name = ChannelName.PUSH

    def __init__(self, sink: WebPushService, rate_limiter, clock):
        super().__init__(rate_limiter, clock)
        self.sink = sink

    def user_opted_in(self, alert: AlertState) -> bool:
        return alert.user.push_enabled

    def destination(self, alert: AlertState) -> Optional[str]:
        if not alert.user.push_subscription:
            return None
        return alert.user.id

    def deliver(self, alert, observation, message, destination) -> DeliveryResult:
        result = self.sink.send_push(
            subscription_info=alert.user.push_subscription,
            title=render_title(alert),
            body=message,
            url=alert_url(alert),
            data={
                "alert_id": alert.id,
                "symbol": alert.symbol,
                "price": observation.price,
            },
            urgency=PUSH_URGENCY.get(alert.priority, "normal"),
        )
        if result == PushResult.SUCCESS:
            return True, None, None
        return False, None, result.value


class NotificationRouter:
    """アラートを各チャネルへ独立に配信する"""

    def __init__(
        self,
        channels: List[NotificationChannel],
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.channels = channels
        self._clock = clock

    def notify(self, alert: AlertState, observation: PriceObservation) -> NotificationResult:
        """
        全チャネルへ通知を試み、結果をアラートに記録する

        1チャネルの失敗・スキップは他チャネルに影響しない

        Returns:
            チャネルごとの送信結果
        """
        result = self.dispatch(alert, observation)
        self.apply(alert, result)
        return result

    def dispatch(self, alert: AlertState, observation: PriceObservation) -> NotificationResult:
        """全チャネルへ送信する（アラートの状態は変更しない）"""
        message = render_message(alert, observation)
        result = NotificationResult(
            alert_id=alert.id,
            title=render_title(alert),
            message=message,
        )

        for channel in self.channels:
            result.outcomes[channel.name] = channel.attempt(alert, observation, message)

        sent = [c.value for c in result.sent_channels()]
        logger.info(f"通知処理完了: alert={alert.id}, sent={sent}")
        return result

    def apply(self, alert: AlertState, result: NotificationResult) -> None:
        """送信結果をアラートの通知状態と実行ログに反映する"""
        for outcome in result.outcomes.values():
            self._record(alert, outcome)

    def _record(self, alert: AlertState, outcome: ChannelOutcome) -> None:
        action = SENT_ACTIONS[outcome.channel]
        if outcome.status == DeliveryStatus.SENT:
            channel_settings = getattr(alert.notifications, outcome.channel.value)
            channel_settings.sent = True
            channel_settings.sent_at = outcome.sent_at
            alert.log(action, self._clock(), details={"destination": outcome.destination})
        elif outcome.status == DeliveryStatus.FAILED:
            alert.log(
                action,
                self._clock(),
                details={"destination": outcome.destination},
                success=False,
                error=outcome.reason,
            )
        elif outcome.status == DeliveryStatus.SKIPPED:
            logger.info(
                f"通知スキップ: alert={alert.id}, channel={outcome.channel.value}, "
                f"reason={outcome.reason}"
            )

    def get_stats(self) -> Dict[str, object]:
        limiter = self.channels[0].rate_limiter if self.channels else None
        return {
            "channels": [c.name.value for c in self.channels],
            "rate_limits": limiter.get_stats() if limiter else {},
        }


def build_notification_router(
    rate_limiter: Optional[NotificationRateLimiter] = None,
    email_service: Optional[EmailService] = None,
    sms_service: Optional[SmsService] = None,
    webpush_service: Optional[WebPushService] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> NotificationRouter:
    """設定値から既定のチャネル構成でルーターを作る"""
    limiter = rate_limiter or NotificationRateLimiter()
    return NotificationRouter(
        channels=[
            EmailChannel(email_service or EmailService(), limiter, clock),
            SmsChannel(sms_service or SmsService(), limiter, clock),
            PushChannel(webpush_service or WebPushService(), limiter, clock),
        ],
        clock=clock,
    )

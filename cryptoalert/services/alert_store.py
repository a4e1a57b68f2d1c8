"""
アラート永続化サービス
SQLAlchemyでアラートの読み込み・保存・作成・削除を行う

各操作は独自のセッションを開いて閉じるため、スケジューラースレッドからも呼び出せる
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload, sessionmaker

from cryptoalert.config import settings
from cryptoalert.database import SessionLocal
from cryptoalert.models.alert import Alert
from cryptoalert.models.notification_history import Notification
from cryptoalert.models.user import User
from cryptoalert.schemas.alert import (
    AlertCreate,
    AlertState,
    AlertType,
    ChannelSettings,
    ExecutionAction,
    NotificationSettings,
)
from cryptoalert.schemas.notification import DeliveryStatus, NotificationResult

logger = logging.getLogger(__name__)

# 一覧取得のデフォルト件数
DEFAULT_LIST_LIMIT = 50


class AlertNotFoundError(Exception):
    """アラートが存在しない"""

    pass


class UserNotFoundError(Exception):
    """ユーザーが存在しない"""

    pass


class AlertLimitError(Exception):
    """ユーザーのアラート数が上限に達している"""

    def __init__(self, max_alerts: int):
        self.max_alerts = max_alerts
        super().__init__(f"Alert limit reached. Maximum {max_alerts} alerts allowed.")


class AlertStore:
    """アラートの永続化"""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        max_alerts_per_user: int = settings.MAX_ALERTS_PER_USER,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self.max_alerts_per_user = max_alerts_per_user
        self._clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _query(self, db: Session):
        return db.query(Alert).options(joinedload(Alert.user))

    def _to_state(self, row: Alert) -> Optional[AlertState]:
        try:
            return AlertState.model_validate(row)
        except ValidationError as e:
            logger.error(f"アラートの読み込みに失敗（スキップ）: alert={row.id} - {e}")
            return None

    def _apply(self, row: Alert, alert: AlertState) -> None:
        """AlertState の内容を ORM 行へ反映"""
        data = alert.model_dump(mode="json", exclude={"user"})
        row.symbol = alert.symbol
        row.name = alert.name
        row.alert_type = alert.alert_type.value
        row.condition = data["condition"]
        row.is_active = alert.is_active
        row.is_triggered = alert.is_triggered
        row.trigger_count = alert.trigger_count
        row.last_triggered_at = alert.last_triggered_at
        row.rearm_at = alert.rearm_at
        row.notifications = data["notifications"]
        row.priority = alert.priority.value
        row.repeat_interval = alert.repeat_interval
        row.max_triggers = alert.max_triggers
        row.expires_at = alert.expires_at
        row.description = alert.description
        row.tags = data["tags"]
        row.price_history = data["price_history"]
        row.execution_log = data["execution_log"]

    # ============================================
    # 読み込み
    # ============================================
    def load_active(self, now: Optional[datetime] = None) -> List[AlertState]:
        """
        監視対象のアラートを全件取得

        有効・期限内・上限未到達で、再アーム待ちでない一回限りのトリガー済みを除く
        """
        now = now or self._clock()
        with self._session() as db:
            rows = (
                self._query(db)
                .filter(
                    Alert.is_active == True,  # noqa: E712
                    Alert.trigger_count < Alert.max_triggers,
                    or_(Alert.expires_at.is_(None), Alert.expires_at > now),
                    or_(Alert.is_triggered == False, Alert.rearm_at.isnot(None)),  # noqa: E712
                )
                .all()
            )
            alerts = [state for state in map(self._to_state, rows) if state]

        logger.info(f"有効なアラートを読み込み: {len(alerts)}件")
        return alerts

    def get(self, alert_id: str) -> Optional[AlertState]:
        with self._session() as db:
            row = self._query(db).filter(Alert.id == alert_id).first()
            return self._to_state(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        is_active: Optional[bool] = None,
        symbol: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[AlertState]:
        """ユーザーのアラート一覧（新しい順）"""
        with self._session() as db:
            query = self._query(db).filter(Alert.user_id == user_id)
            if is_active is not None:
                query = query.filter(Alert.is_active == is_active)
            if symbol:
                query = query.filter(Alert.symbol == symbol.strip().upper())
            if alert_type is not None:
                query = query.filter(Alert.alert_type == alert_type.value)
            rows = query.order_by(Alert.created_at.desc()).limit(limit).all()
            return [state for state in map(self._to_state, rows) if state]

    # ============================================
    # 書き込み
    # ============================================
    def create(
        self,
        user_id: str,
        data: AlertCreate,
        default_repeat_interval: int = 0,
    ) -> AlertState:
        """
        アラートを作成

        Raises:
            UserNotFoundError: ユーザーが存在しない場合
            AlertLimitError: 有効なアラート数が上限に達している場合
        """
        now = self._clock()
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            max_alerts = user.max_alerts or self.max_alerts_per_user
            active_count = (
                db.query(func.count(Alert.id))
                .filter(Alert.user_id == user_id, Alert.is_active == True)  # noqa: E712
                .scalar()
            )
            if active_count >= max_alerts:
                raise AlertLimitError(max_alerts)

            alert = AlertState(
                id=str(uuid.uuid4()),
                user_id=user_id,
                symbol=data.symbol,
                name=data.name,
                alert_type=data.alert_type,
                condition=data.condition.model_copy(deep=True),
                is_active=data.is_active,
                notifications=NotificationSettings(
                    email=ChannelSettings(enabled=data.notifications.email.enabled),
                    sms=ChannelSettings(enabled=data.notifications.sms.enabled),
                    push=ChannelSettings(enabled=data.notifications.push.enabled),
                ),
                priority=data.priority,
                repeat_interval=(
                    data.repeat_interval
                    if data.repeat_interval is not None
                    else default_repeat_interval
                ),
                max_triggers=data.max_triggers,
                expires_at=data.expires_at,
                description=data.description,
                tags=list(data.tags),
            )
            alert.log(ExecutionAction.CREATED, now)

            row = Alert(id=alert.id, user_id=user_id)
            self._apply(row, alert)
            db.add(row)
            db.commit()

            created = self._query(db).filter(Alert.id == alert.id).first()
            logger.info(f"アラートを作成: alert={alert.id}, user={user_id}, symbol={alert.symbol}")
            return self._to_state(created)

    def save(self, alert: AlertState) -> None:
        """
        アラートの変更を保存

        Raises:
            AlertNotFoundError: 既に削除されている場合
        """
        with self._session() as db:
            row = db.get(Alert, alert.id)
            if row is None:
                raise AlertNotFoundError(alert.id)
            self._apply(row, alert)
            db.commit()

    def delete(self, alert_id: str) -> bool:
        with self._session() as db:
            row = db.get(Alert, alert_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            logger.info(f"アラートを削除: alert={alert_id}")
            return True

    def record_notifications(self, alert: AlertState, result: NotificationResult) -> int:
        """チャネルごとの送信結果を通知履歴に記録（無効チャネルは記録しない）"""
        now = self._clock()
        with self._session() as db:
            count = 0
            for outcome in result.outcomes.values():
                if outcome.status == DeliveryStatus.DISABLED:
                    continue
                db.add(
                    Notification(
                        id=str(uuid.uuid4()),
                        user_id=alert.user_id,
                        alert_id=alert.id,
                        channel=outcome.channel.value,
                        status=outcome.status.value,
                        title=result.title[:255],
                        message=result.message,
                        error=outcome.reason,
                        sent_at=outcome.sent_at or now,
                    )
                )
                count += 1
            db.commit()
            return count

    def increment_user_trigger_stats(self, user_id: str) -> None:
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                return
            user.triggered_alerts += 1
            user.last_triggered_at = self._clock()
            db.commit()

    # ============================================
    # 統計
    # ============================================
    def stats(self) -> Dict[str, Any]:
        with self._session() as db:
            total = db.query(func.count(Alert.id)).scalar()
            active = (
                db.query(func.count(Alert.id))
                .filter(Alert.is_active == True)  # noqa: E712
                .scalar()
            )
            triggered = (
                db.query(func.count(Alert.id))
                .filter(Alert.is_triggered == True)  # noqa: E712
                .scalar()
            )
            avg_count = db.query(func.avg(Alert.trigger_count)).scalar()
            return {
                "total_alerts": total or 0,
                "active_alerts": active or 0,
                "triggered_alerts": triggered or 0,
                "avg_trigger_count": round(float(avg_count or 0), 2),
            }

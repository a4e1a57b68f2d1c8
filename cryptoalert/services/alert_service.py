"""
アラート管理サービス
作成・更新・一時停止・再開・削除を行い、監視中の作業セットと同期させる
"""
import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from cryptoalert.config import settings
from cryptoalert.schemas.alert import AlertCreate, AlertState, AlertType, AlertUpdate
from cryptoalert.services.alert_store import AlertNotFoundError, AlertStore

logger = logging.getLogger(__name__)


class AlertService:
    """アラートのライフサイクル操作"""

    def __init__(
        self,
        store: AlertStore,
        monitor=None,
        default_repeat_interval: int = settings.DEFAULT_REPEAT_INTERVAL_MINUTES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.monitor = monitor
        self.default_repeat_interval = default_repeat_interval
        self._clock = clock

    def _exclusive(self):
        return self.monitor.exclusive() if self.monitor is not None else nullcontext()

    def _owned(self, user_id: str, alert_id: str) -> AlertState:
        """
        ユーザーのアラートを取得（監視中ならメモリ上の最新状態を使う）

        Raises:
            AlertNotFoundError: 存在しないか他ユーザーのアラートの場合
        """
        alert = self.monitor.current(alert_id) if self.monitor is not None else None
        if alert is None:
            alert = self.store.get(alert_id)
        if alert is None or alert.user_id != user_id:
            raise AlertNotFoundError(alert_id)
        return alert

    def create_alert(self, user_id: str, data: AlertCreate) -> AlertState:
        """
        アラートを作成し、有効なら監視を開始

        Raises:
            AlertLimitError: 有効なアラート数が上限に達している場合
        """
        alert = self.store.create(user_id, data, self.default_repeat_interval)
        if self.monitor is not None and alert.is_active:
            self.monitor.track(alert)
        return alert

    def get_alert(self, user_id: str, alert_id: str) -> AlertState:
        return self._owned(user_id, alert_id)

    def list_alerts(
        self,
        user_id: str,
        is_active: Optional[bool] = None,
        symbol: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        limit: int = 50,
    ) -> List[AlertState]:
        return self.store.list_for_user(
            user_id,
            is_active=is_active,
            symbol=symbol,
            alert_type=alert_type,
            limit=limit,
        )

    def update_alert(self, user_id: str, alert_id: str, data: AlertUpdate) -> AlertState:
        """指定フィールドを更新し、監視対象かどうかを判定し直す"""
        with self._exclusive():
            alert = self._owned(user_id, alert_id)
            changed = alert.apply_update(data)
            self.store.save(alert)
            if self.monitor is not None:
                self.monitor.track(alert)

        logger.info(f"アラートを更新: alert={alert_id}, fields={changed}")
        return alert

    def pause_alert(self, user_id: str, alert_id: str) -> AlertState:
        """アラートを一時停止（次の評価サイクルから対象外）"""
        with self._exclusive():
            alert = self._owned(user_id, alert_id)
            alert.pause(self._clock())
            if self.monitor is not None:
                self.monitor.untrack(alert_id)
            self.store.save(alert)

        logger.info(f"アラートを一時停止: alert={alert_id}")
        return alert

    def resume_alert(self, user_id: str, alert_id: str) -> AlertState:
        """アラートを再開（トリガー状態もリセットする）"""
        with self._exclusive():
            alert = self._owned(user_id, alert_id)
            alert.resume(self._clock())
            self.store.save(alert)
            if self.monitor is not None:
                self.monitor.track(alert)

        logger.info(f"アラートを再開: alert={alert_id}")
        return alert

    def delete_alert(self, user_id: str, alert_id: str) -> None:
        with self._exclusive():
            alert = self._owned(user_id, alert_id)
            if self.monitor is not None:
                self.monitor.forget(alert_id)
            if not self.store.delete(alert_id):
                raise AlertNotFoundError(alert_id)

        logger.info(
            f"🗑️ アラートを削除: alert={alert_id}, symbol={alert.symbol}, "
            f"トリガー回数={alert.trigger_count}"
        )

    def get_stats(self) -> Dict[str, Any]:
        """アラート統計と監視状態"""
        stats: Dict[str, Any] = {"alerts": self.store.stats()}
        if self.monitor is not None:
            stats["monitor"] = self.monitor.get_status()
            stats["notifications"] = self.monitor.router.get_stats()
        return stats

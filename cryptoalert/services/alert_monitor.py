"""
アラート監視サービス

APSchedulerで以下の定期ジョブを実行する
- 価格更新: 監視中アラートの銘柄をまとめて取得しキャッシュを更新（デフォルト30秒ごと）
- アラート評価: キャッシュの最新価格で各アラートを判定（デフォルト5秒ごと）
- 再同期: DBから監視対象アラートを読み直す（デフォルト5分ごと）

価格更新と評価は別スレッドで並行に動くため、インデックスとキャッシュはロックで保護する。
単一インスタンスでの稼働が前提（複数起動すると通知が重複する）
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from cryptoalert.config import settings
from cryptoalert.schemas.alert import AlertResponse, AlertState
from cryptoalert.schemas.notification import NotificationResult
from cryptoalert.schemas.price import PriceObservation
from cryptoalert.services.alert_index import ActiveAlertIndex
from cryptoalert.services.alert_store import AlertNotFoundError, AlertStore
from cryptoalert.services.evaluator import should_trigger
from cryptoalert.services.notification_service import (
    NotificationRouter,
    build_notification_router,
)
from cryptoalert.services.price_cache import PriceCache
from cryptoalert.services.price_source import CoinGeckoPriceSource, PriceSourceError
from cryptoalert.services.realtime import RealtimeTransport

logger = logging.getLogger(__name__)

PRICE_REFRESH_JOB_ID = "price_refresh"
ALERT_EVALUATION_JOB_ID = "alert_evaluation"
ALERT_RESYNC_JOB_ID = "alert_resync"


class AlertMonitor:
    """アラート監視のオーケストレーター（アプリ起動時に1つだけ生成して共有する）"""

    def __init__(
        self,
        store: AlertStore,
        price_source,
        router: NotificationRouter,
        transport: Optional[RealtimeTransport] = None,
        price_cache: Optional[PriceCache] = None,
        index: Optional[ActiveAlertIndex] = None,
        price_interval: int = settings.PRICE_CHECK_INTERVAL_SECONDS,
        evaluation_interval: int = settings.ALERT_CHECK_INTERVAL_SECONDS,
        resync_interval: int = settings.ALERT_RESYNC_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.price_source = price_source
        self.router = router
        self.transport = transport
        self.price_cache = price_cache if price_cache is not None else PriceCache()
        self.index = index if index is not None else ActiveAlertIndex()
        self.price_interval = price_interval
        self.evaluation_interval = evaluation_interval
        self.resync_interval = resync_interval
        self._clock = clock

        self._scheduler: Optional[BackgroundScheduler] = None
        self._state_lock = threading.Lock()
        # アラート単位の処理（評価・一時停止・削除など）を直列化する
        self._alert_lock = threading.RLock()
        # トリガー済みだがDBへの保存が済んでいないアラート
        self._unsaved: Dict[str, AlertState] = {}
        # 直近の再同期開始以降にトリガーしたアラート
        self._recent_triggers: Dict[str, AlertState] = {}

        self.last_price_refresh_at: Optional[datetime] = None
        self.last_evaluation_at: Optional[datetime] = None
        self.triggers_fired = 0

    # ============================================
    # 開始・停止
    # ============================================
    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """監視を開始（実行中なら何もしない）"""
        with self._state_lock:
            if self.running:
                logger.warning("アラート監視は既に実行中です")
                return

            logger.info("🚨 アラート監視を開始します...")
            self.load_active_alerts()

            scheduler = BackgroundScheduler()
            scheduler.add_job(
                self.refresh_prices,
                trigger=IntervalTrigger(seconds=self.price_interval),
                id=PRICE_REFRESH_JOB_ID,
                name="価格更新",
                replace_existing=True,
                max_instances=1,  # 同時に1インスタンスのみ
                coalesce=True,
            )
            scheduler.add_job(
                self.evaluate_alerts,
                trigger=IntervalTrigger(seconds=self.evaluation_interval),
                id=ALERT_EVALUATION_JOB_ID,
                name="アラート評価",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.add_job(
                self.load_active_alerts,
                trigger=IntervalTrigger(seconds=self.resync_interval),
                id=ALERT_RESYNC_JOB_ID,
                name="アラート再同期",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler

            logger.info(f"✅ アラート監視開始: 監視中アラート={len(self.index)}件")
            logger.info(f"   - 価格更新: {self.price_interval}秒ごと")
            logger.info(f"   - アラート評価: {self.evaluation_interval}秒ごと")
            logger.info(f"   - 再同期: {self.resync_interval}秒ごと")

    def stop(self) -> None:
        """監視を停止（新しいサイクルは始まらない。実行中のサイクルは最後まで走る）"""
        with self._state_lock:
            if not self.running:
                return
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("🛑 アラート監視を停止しました")

    # ============================================
    # インデックス管理
    # ============================================
    def load_active_alerts(self) -> int:
        """
        DBから監視対象アラートを読み込み、作業セットを置き換える

        読み込みから置き換えまでロックを保持する。
        DBへの反映が済んでいないトリガー（通知中・保存失敗・読み込み中に発生したもの）は
        DBの行よりメモリ上の状態を優先する
        """
        now = self._clock()
        with self._alert_lock:
            self._recent_triggers.clear()
            try:
                loaded = self.store.load_active(now)
            except SQLAlchemyError as e:
                logger.error(f"❌ 有効なアラートの読み込みに失敗: {str(e)}")
                return len(self.index)

            newer = {**self._recent_triggers, **self._unsaved}
            alerts = []
            for alert in loaded:
                current = newer.get(alert.id, alert)
                if current.remains_armable() and not current.is_expired(now):
                    alerts.append(current)
            count = self.index.load(alerts)
        logger.info(f"📊 監視対象アラートを読み込み: {count}件")
        return count

    def exclusive(self) -> threading.RLock:
        """アラート単位の処理と排他するためのロック"""
        return self._alert_lock

    def current(self, alert_id: str) -> Optional[AlertState]:
        """メモリ上の最新のアラート（未保存のトリガー分を含む）"""
        with self._alert_lock:
            return self._unsaved.get(alert_id) or self.index.get(alert_id)

    def track(self, alert: AlertState) -> bool:
        """監視対象なら作業セットに追加、そうでなければ外す"""
        with self._alert_lock:
            if alert.remains_armable() and not alert.is_expired(self._clock()):
                self.index.upsert(alert)
                return True
            self.index.remove(alert.id)
            return False

    def untrack(self, alert_id: str) -> None:
        with self._alert_lock:
            self.index.remove(alert_id)

    def forget(self, alert_id: str) -> None:
        """削除されたアラートをメモリ上から完全に外す"""
        with self._alert_lock:
            self.index.remove(alert_id)
            self._unsaved.pop(alert_id, None)
            self._recent_triggers.pop(alert_id, None)

    # ============================================
    # 価格更新
    # ============================================
    def refresh_prices(self) -> Dict[str, PriceObservation]:
        """
        監視中アラートが参照する全銘柄の価格を1リクエストで取得してキャッシュを更新

        取得失敗時はキャッシュの直近値をそのまま残す
        """
        symbols = self.index.symbols_referenced()
        if not symbols:
            logger.debug("監視中のアラートがないため価格更新をスキップ")
            return {}

        try:
            prices = self.price_source.get_prices(symbols)
        except PriceSourceError as e:
            logger.warning(f"⚠️ 価格更新に失敗（キャッシュの直近値を継続使用）: {str(e)}")
            return {}
        except Exception:
            logger.exception("⚠️ 価格更新で予期しないエラー（キャッシュの直近値を継続使用）")
            return {}

        for symbol, observation in prices.items():
            self.price_cache.update(symbol, observation)

        self.last_price_refresh_at = self._clock()
        logger.info(f"📈 価格を更新: {len(prices)}/{len(symbols)}銘柄")

        self._publish(
            "price_update",
            {symbol: obs.model_dump(mode="json") for symbol, obs in prices.items()},
        )
        return prices

    def _observation_for(self, symbol: str) -> Optional[PriceObservation]:
        """キャッシュになければその銘柄だけ単発で取得する"""
        observation = self.price_cache.get(symbol)
        if observation is not None:
            return observation

        try:
            fresh = self.price_source.get_prices({symbol})
        except Exception as e:
            logger.warning(f"⚠️ 単発の価格取得に失敗: symbol={symbol} - {str(e)}")
            return None

        observation = fresh.get(symbol)
        if observation is not None:
            self.price_cache.update(symbol, observation)
        return observation

    # ============================================
    # アラート評価
    # ============================================
    def evaluate_alerts(self) -> int:
        """
        作業セットの全アラートを評価

        1件のエラーは記録して次のアラートへ進む

        Returns:
            トリガーした件数
        """
        alerts = self.index.all()
        now = self._clock()
        self.last_evaluation_at = now
        if not alerts:
            return 0

        triggered = 0
        for alert in alerts:
            try:
                if self.process_alert(alert, now):
                    triggered += 1
            except Exception:
                logger.exception(f"❌ アラート処理エラー: alert={alert.id}")

        if triggered:
            logger.info(f"アラート評価完了: 対象={len(alerts)}件, トリガー={triggered}件")
        return triggered

    def process_alert(self, alert: AlertState, now: datetime) -> bool:
        """
        1件のアラートを評価し、条件を満たせばトリガーする

        価格取得と通知送信はロックの外で行う。状態の判定と更新はロック内で行う
        """
        observation = self._observation_for(alert.symbol)

        with self._alert_lock:
            # 評価待ちの間に一時停止・削除・再同期された場合はスキップ
            if self.index.get(alert.id) is not alert:
                return False

            if alert.is_expired(now):
                self.index.remove(alert.id)
                logger.info(f"期限切れのため監視を終了: alert={alert.id}")
                return False

            rearmed = alert.rearm_if_due(now)
            if rearmed:
                logger.info(f"🔁 繰り返しアラートを再アーム: alert={alert.id}")

            if observation is None:
                if rearmed:
                    self._persist(alert)
                return False

            alert.add_price_history(observation.price, observation.observed_at)

            if not should_trigger(alert, observation, now):
                self._persist(alert)
                return False

            self._mark_triggered(alert, observation, now)

        self._complete_trigger(alert, observation, now)
        return True

    def _mark_triggered(
        self, alert: AlertState, observation: PriceObservation, now: datetime
    ) -> None:
        """トリガー状態を記録し作業セットを更新（呼び出し側でロックを保持する）"""
        logger.info(
            f"🚨 アラートをトリガー: {alert.symbol} {alert.alert_type.value} - {observation.price}"
        )
        alert.mark_triggered(observation, now)
        self.triggers_fired += 1
        self._unsaved[alert.id] = alert
        self._recent_triggers[alert.id] = alert
        if not alert.remains_armable():
            self.index.remove(alert.id)

    def _complete_trigger(
        self, alert: AlertState, observation: PriceObservation, now: datetime
    ) -> Optional[NotificationResult]:
        """
        トリガー後の処理: 通知 → 保存 → 通知履歴 → 配信

        保存に失敗してもメモリ上のトリガー状態は維持する
        """
        result: Optional[NotificationResult] = None
        try:
            result = self.router.dispatch(alert, observation)
        except Exception:
            logger.exception(f"❌ 通知処理エラー: alert={alert.id}")

        with self._alert_lock:
            # 通知中に削除された場合は行を作り直さない
            if self._unsaved.get(alert.id) is alert:
                if result is not None:
                    self.router.apply(alert, result)
                self._persist(alert)
            else:
                logger.info(f"通知中にアラートが削除されたため保存をスキップ: alert={alert.id}")
            snapshot = AlertResponse.from_state(alert, now).model_dump(mode="json")

        if result is not None:
            try:
                self.store.record_notifications(alert, result)
            except SQLAlchemyError as e:
                logger.error(f"❌ 通知履歴の保存に失敗: alert={alert.id} - {str(e)}")

        try:
            self.store.increment_user_trigger_stats(alert.user_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ ユーザー統計の更新に失敗: user={alert.user_id} - {str(e)}")

        self._publish(
            "alert_triggered",
            {
                "alert": snapshot,
                "current_data": observation.model_dump(mode="json"),
                "notifications": (
                    {k.value: v.model_dump(mode="json") for k, v in result.outcomes.items()}
                    if result is not None else {}
                ),
            },
            user_id=alert.user_id,
        )

        logger.info(f"✅ アラートのトリガー処理完了: alert={alert.id}")
        return result

    def _persist(self, alert: AlertState) -> bool:
        try:
            self.store.save(alert)
        except AlertNotFoundError:
            logger.warning(f"保存対象のアラートが削除済みのため監視を終了: alert={alert.id}")
            self.forget(alert.id)
            return False
        except SQLAlchemyError as e:
            logger.error(f"❌ アラートの保存に失敗（メモリ上の状態は維持）: alert={alert.id} - {str(e)}")
            return False

        if self._unsaved.get(alert.id) is alert:
            del self._unsaved[alert.id]
        return True

    def _publish(self, topic: str, payload: Any, user_id: Optional[str] = None) -> None:
        if self.transport is None:
            return
        try:
            self.transport.publish(topic, payload, user_id=user_id)
        except Exception:
            logger.exception(f"リアルタイム配信エラー: topic={topic}")

    # ============================================
    # 状態
    # ============================================
    def get_status(self) -> Dict[str, Any]:
        """監視の状態を取得"""
        jobs = []
        if self.running:
            for job in self._scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                })

        last_price_update = self.price_cache.last_updated()
        return {
            "running": self.running,
            "active_alerts": len(self.index),
            "cached_prices": len(self.price_cache),
            "last_price_update": last_price_update.isoformat() if last_price_update else None,
            "last_price_refresh_at": (
                self.last_price_refresh_at.isoformat() if self.last_price_refresh_at else None
            ),
            "last_evaluation_at": (
                self.last_evaluation_at.isoformat() if self.last_evaluation_at else None
            ),
            "triggers_fired": self.triggers_fired,
            "intervals": {
                "price_refresh_seconds": self.price_interval,
                "evaluation_seconds": self.evaluation_interval,
                "resync_seconds": self.resync_interval,
            },
            "jobs": jobs,
        }


def build_alert_monitor(
    store: Optional[AlertStore] = None,
    transport: Optional[RealtimeTransport] = None,
) -> AlertMonitor:
    """設定値から既定の構成でモニターを作る"""
    return AlertMonitor(
        store=store or AlertStore(),
        price_source=CoinGeckoPriceSource(),
        router=build_notification_router(),
        transport=transport,
    )

"""
監視中アラートのインメモリインデックス
AlertStore の「有効なアラート」部分集合をアラートIDで保持する
"""

import threading
from typing import Dict, Iterable, List, Optional, Set

from cryptoalert.schemas.alert import AlertState


class ActiveAlertIndex:
    """アラートID → AlertState の作業セット（スレッドセーフ）"""

    def __init__(self):
        self._alerts: Dict[str, AlertState] = {}
        self._lock = threading.Lock()

    def load(self, alerts: Iterable[AlertState]) -> int:
        """作業セット全体を置き換える（起動時・定期再同期）"""
        loaded = {alert.id: alert for alert in alerts}
        with self._lock:
            self._alerts = loaded
            return len(self._alerts)

    def upsert(self, alert: AlertState) -> None:
        with self._lock:
            self._alerts[alert.id] = alert

    def remove(self, alert_id: str) -> Optional[AlertState]:
        with self._lock:
            return self._alerts.pop(alert_id, None)

    def get(self, alert_id: str) -> Optional[AlertState]:
        with self._lock:
            return self._alerts.get(alert_id)

    def all(self) -> List[AlertState]:
        """スナップショットを返す（反復中に他スレッドが更新しても安全）"""
        with self._lock:
            return list(self._alerts.values())

    def symbols_referenced(self) -> Set[str]:
        with self._lock:
            return {alert.symbol for alert in self._alerts.values()}

    def __contains__(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._alerts

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

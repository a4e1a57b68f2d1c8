"""
価格キャッシュサービス
銘柄ごとの最新価格を保持し、価格APIの一時的な障害時にも直近値を返す
"""

import threading
from datetime import datetime
from typing import Optional, List, Dict, Any

from cryptoalert.schemas.price import PriceObservation


class PriceCache:
    """
    銘柄ごとの最終観測値キャッシュ

    TTLによる削除は行わない。古さは observed_at で判断する
    """

    def __init__(self):
        self._prices: Dict[str, PriceObservation] = {}
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "updates": 0,
        }

    def _normalize_key(self, symbol: str) -> str:
        """シンボルを正規化（大文字化、トリム）"""
        return symbol.strip().upper()

    def update(self, symbol: str, observation: PriceObservation) -> None:
        """
        最新価格を保存（既存値は置き換え）

        Args:
            symbol: 銘柄シンボル
            observation: 観測値
        """
        key = self._normalize_key(symbol)
        with self._lock:
            self._prices[key] = observation
            self._stats["updates"] += 1

    def get(self, symbol: str) -> Optional[PriceObservation]:
        """
        キャッシュから最新価格を取得

        Args:
            symbol: 銘柄シンボル

        Returns:
            PriceObservation or None（未取得）
        """
        key = self._normalize_key(symbol)
        with self._lock:
            result = self._prices.get(key)
            if result is not None:
                self._stats["hits"] += 1
            else:
                self._stats["misses"] += 1
            return result

    def snapshot(self) -> Dict[str, PriceObservation]:
        """全銘柄の最新価格のコピー"""
        with self._lock:
            return dict(self._prices)

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._prices.keys())

    def last_updated(self) -> Optional[datetime]:
        with self._lock:
            if not self._prices:
                return None
            return max(p.observed_at for p in self._prices.values())

    def clear(self) -> int:
        """
        全キャッシュをクリア

        Returns:
            クリアした銘柄数
        """
        with self._lock:
            count = len(self._prices)
            self._prices.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._prices)

    def get_stats(self) -> Dict[str, Any]:
        """キャッシュ統計を取得"""
        with self._lock:
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = (
                self._stats["hits"] / total_requests * 100
                if total_requests > 0 else 0
            )
            return {
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "updates": self._stats["updates"],
                "hit_rate": round(hit_rate, 2),
                "current_size": len(self._prices),
            }

"""
通知レート制限
(チャネル, 送信先) ごとに送信数を数え、ウィンドウ内の上限を超えた送信をスキップさせる

ウィンドウはカレンダー固定ではなく、ウィンドウ切れ後の最初の送信から始まる
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cachetools import TTLCache

from cryptoalert.config import settings
from cryptoalert.schemas.notification import ChannelName

# 1チャネルあたりの最大追跡送信先数
DEFAULT_MAX_KEYS = 10000


@dataclass(frozen=True)
class RateLimit:
    limit: int
    window_seconds: int


def default_rate_limits() -> Dict[ChannelName, RateLimit]:
    return {
        ChannelName.EMAIL: RateLimit(settings.EMAIL_RATE_LIMIT, settings.EMAIL_RATE_WINDOW_SECONDS),
        ChannelName.SMS: RateLimit(settings.SMS_RATE_LIMIT, settings.SMS_RATE_WINDOW_SECONDS),
        ChannelName.PUSH: RateLimit(settings.PUSH_RATE_LIMIT, settings.PUSH_RATE_WINDOW_SECONDS),
    }


class NotificationRateLimiter:
    """チャネル別の送信数カウンタ（スレッドセーフ）"""

    def __init__(
        self,
        limits: Optional[Dict[ChannelName, RateLimit]] = None,
        timer: Callable[[], float] = time.monotonic,
        max_keys: int = DEFAULT_MAX_KEYS,
    ):
        """
        Args:
            limits: チャネルごとの上限とウィンドウ（秒）
            timer: 経過秒を返す関数（テストで差し替える）
            max_keys: チャネルごとの最大送信先数
        """
        self.limits = limits or default_rate_limits()
        self._timer = timer
        self._lock = threading.Lock()
        # ウィンドウを過ぎたカウンタは TTLCache が自動で破棄する
        self._windows: Dict[ChannelName, TTLCache] = {
            channel: TTLCache(maxsize=max_keys, ttl=limit.window_seconds, timer=timer)
            for channel, limit in self.limits.items()
        }

    def _current(self, channel: ChannelName, destination: str) -> Optional[Dict[str, Any]]:
        """有効なウィンドウのカウンタを返す（期限切れなら破棄してNone）"""
        window = self._windows[channel]
        entry = window.get(destination)
        if entry is None:
            return None
        if self._timer() - entry["window_start"] > self.limits[channel].window_seconds:
            del window[destination]
            return None
        return entry

    def check(self, channel: ChannelName, destination: str) -> bool:
        """
        送信可能かチェック

        Returns:
            上限未満ならTrue
        """
        if channel not in self.limits:
            return True
        with self._lock:
            entry = self._current(channel, destination)
            if entry is None:
                return True
            return entry["count"] < self.limits[channel].limit

    def record(self, channel: ChannelName, destination: str) -> None:
        """送信成功をカウント"""
        if channel not in self.limits:
            return
        with self._lock:
            entry = self._current(channel, destination)
            if entry is None:
                entry = {"count": 0, "window_start": self._timer()}
            entry["count"] += 1
            self._windows[channel][destination] = entry

    def remaining(self, channel: ChannelName, destination: str) -> Optional[int]:
        if channel not in self.limits:
            return None
        with self._lock:
            entry = self._current(channel, destination)
            used = entry["count"] if entry else 0
            return max(0, self.limits[channel].limit - used)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                channel.value: {
                    "limit": self.limits[channel].limit,
                    "window_seconds": self.limits[channel].window_seconds,
                    "tracked_destinations": len(window),
                }
                for channel, window in self._windows.items()
            }

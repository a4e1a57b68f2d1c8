"""
リアルタイム配信サービス
WebSocketで接続中のクライアントへ価格更新とアラートトリガーを配信する
"""
import asyncio
import logging
import threading
from typing import Any, List, Optional, Tuple

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class RealtimeTransport:
    """WebSocket接続の管理と配信"""

    def __init__(self) -> None:
        self._connections: List[Tuple[WebSocket, Optional[str]]] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """配信に使うイベントループ（アプリ起動時に設定）"""
        self._loop = loop

    async def connect(self, ws: WebSocket, user_id: Optional[str] = None) -> None:
        await ws.accept()
        with self._lock:
            self._connections.append((ws, user_id))
        logger.info(f"WebSocket接続: user={user_id}, 接続数={self.subscriber_count()}")

    def disconnect(self, ws: WebSocket) -> None:
        with self._lock:
            self._connections = [(c, u) for c, u in self._connections if c is not ws]

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def _targets(self, user_id: Optional[str]) -> List[WebSocket]:
        with self._lock:
            if user_id is None:
                return [ws for ws, _ in self._connections]
            return [ws for ws, uid in self._connections if uid == user_id]

    async def broadcast_json(self, data: dict, user_id: Optional[str] = None) -> None:
        for ws in self._targets(user_id):
            try:
                await ws.send_json(data)
            except Exception as exc:
                logger.exception("broadcast_json failed", exc_info=exc)
                self.disconnect(ws)

    def publish(self, topic: str, payload: Any, user_id: Optional[str] = None) -> None:
        """
        トピックを配信（fire-and-forget）

        スケジューラースレッドから呼ばれるため、送信はイベントループに委ねる。
        購読者がいない場合は何もしない

        Args:
            topic: "price_update", "alert_triggered" など
            payload: JSON化できるデータ
            user_id: 指定した場合はそのユーザーの接続にのみ送る
        """
        if not self._targets(user_id):
            return
        if self._loop is None or self._loop.is_closed():
            logger.debug(f"イベントループ未設定のため配信をスキップ: topic={topic}")
            return

        message = {"type": topic, "data": jsonable_encoder(payload)}
        asyncio.run_coroutine_threadsafe(self.broadcast_json(message, user_id), self._loop)

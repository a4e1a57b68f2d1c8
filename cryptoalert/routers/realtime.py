"""
WebSocket エンドポイント
接続中は価格更新と自分のアラートのトリガーを受け取る
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


@router.websocket("/ws")
async def realtime_updates(websocket: WebSocket, user_id: Optional[str] = Query(None)):
    transport = websocket.app.state.transport
    await transport.connect(websocket, user_id)
    try:
        await websocket.send_json({"type": "connected", "data": {"user_id": user_id}})

        while True:
            # クライアントからのメッセージは keep-alive としてのみ扱う
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        transport.disconnect(websocket)
        logger.info(f"WebSocket切断: user={user_id}")

"""
Web Push通知サービス
ブラウザプッシュ通知を送信する
"""
import json
import logging
from enum import Enum
from typing import Optional

from pywebpush import webpush, WebPushException

from cryptoalert.config import settings

logger = logging.getLogger(__name__)

# プッシュサービスでの保持期間（秒）
PUSH_TTL_SECONDS = 3600


class PushResult(Enum):
    """プッシュ通知の送信結果"""
    SUCCESS = "success"
    FAILED = "failed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"  # 410 Gone - 購読が無効


class WebPushService:
    """Web Push送信サービスクラス"""

    def __init__(
        self,
        public_key: Optional[str] = settings.VAPID_PUBLIC_KEY,
        private_key: Optional[str] = settings.VAPID_PRIVATE_KEY,
        claims_email: str = settings.VAPID_CLAIMS_EMAIL,
    ):
        self.public_key = public_key
        self.private_key = private_key
        self.claims_email = claims_email
        self.enabled = bool(public_key and private_key)

        if not self.enabled:
            logger.warning("VAPID鍵が設定されていません - プッシュ通知は無効です")

    def send_push(
        self,
        subscription_info: dict,
        title: str,
        body: str,
        url: Optional[str] = None,
        data: Optional[dict] = None,
        urgency: str = "normal",
    ) -> PushResult:
        """
        ブラウザプッシュ通知を送信

        Args:
            subscription_info: ブラウザから取得した購読情報（endpoint, keys）
            title: 通知タイトル
            body: 通知本文
            url: クリック時の遷移先URL
            data: 通知に添付する追加データ
            urgency: 配信の優先度（very-low, low, normal, high）

        Returns:
            PushResult: 送信結果（SUCCESS, FAILED, SUBSCRIPTION_EXPIRED）
        """
        if not self.enabled:
            return PushResult.FAILED

        try:
            payload = {
                "title": title,
                "body": body,
                "icon": "/icon-192x192.png",
                "badge": "/badge-72x72.png",
                "tag": (data or {}).get("alert_id"),
                "requireInteraction": urgency == "high",
                "data": {
                    "url": url or "/",
                    **(data or {}),
                },
            }

            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": self.claims_email},
                ttl=PUSH_TTL_SECONDS,
                headers={"Urgency": urgency},
            )

            logger.info(f"プッシュ通知送信成功: {title}")
            return PushResult.SUCCESS

        except WebPushException as e:
            logger.error(f"プッシュ通知送信エラー: {str(e)}")
            if e.response is not None and e.response.status_code == 410:
                logger.warning("購読が無効になっています（ブラウザで解除された可能性）")
                return PushResult.SUBSCRIPTION_EXPIRED
            return PushResult.FAILED
        except Exception as e:
            logger.error(f"プッシュ通知エラー: {str(e)}")
            return PushResult.FAILED

    def get_vapid_public_key(self) -> str:
        """フロントエンド用のVAPID公開鍵を取得"""
        return self.public_key or ""

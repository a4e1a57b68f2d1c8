"""
メール送信サービス
Resend APIを使用してメールを送信する
"""
import logging
from typing import Optional

import resend

from cryptoalert.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """メール送信サービスクラス"""

    def __init__(
        self,
        api_key: Optional[str] = settings.RESEND_API_KEY,
        from_email: str = settings.RESEND_FROM_EMAIL,
    ):
        self.from_email = from_email
        self.enabled = bool(api_key)

        if api_key:
            resend.api_key = api_key
        else:
            logger.warning("RESEND_API_KEY が設定されていません - メール通知は無効です")

    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> dict:
        """
        メールを送信する

        通常の送信失敗は例外ではなく {"success": False, "error": ...} で返す
        """
        if not self.enabled:
            return {"success": False, "error": "Email service not configured"}

        try:
            params: resend.Emails.SendParams = {
                "from": self.from_email,
                "to": [to],
                "subject": subject,
                "text": body,
            }

            if html:
                params["html"] = html

            response = resend.Emails.send(params)

            logger.info(f"メール送信成功: to={to}, subject={subject}")
            return {"success": True, "id": response.get("id")}

        except Exception as e:
            logger.error(f"メール送信エラー: {str(e)}")
            return {"success": False, "error": str(e)}

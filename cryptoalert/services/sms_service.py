"""
SMS送信サービス
Twilio REST API（Messages）を使用してSMSを送信する
"""
import logging
import re
from typing import Callable, Optional

import requests

from cryptoalert.config import settings

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
REQUEST_TIMEOUT = 10


def format_phone_number(phone_number: str) -> str:
    """
    電話番号をE.164形式に整形

    10桁は米国番号とみなして +1 を付ける
    """
    digits = re.sub(r"\D", "", phone_number)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


class SmsService:
    """SMS送信サービスクラス"""

    def __init__(
        self,
        account_sid: Optional[str] = settings.TWILIO_ACCOUNT_SID,
        auth_token: Optional[str] = settings.TWILIO_AUTH_TOKEN,
        from_number: Optional[str] = settings.TWILIO_FROM_NUMBER,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._session_factory = session_factory
        self.enabled = bool(account_sid and auth_token and from_number)

        if not self.enabled:
            logger.warning("Twilioの認証情報が設定されていません - SMS通知は無効です")

    def send_sms(self, to: str, body: str) -> dict:
        """
        SMSを送信する

        通常の送信失敗は例外ではなく {"success": False, "error": ...} で返す
        """
        if not self.enabled:
            return {"success": False, "error": "SMS service not configured"}

        phone_number = format_phone_number(to)
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"

        session = self._session_factory()
        try:
            response = session.post(
                url,
                data={"To": phone_number, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()

            logger.info(f"SMS送信成功: to={phone_number}, body={body[:50]}...")
            return {"success": True, "id": data.get("sid"), "status": data.get("status")}

        except requests.exceptions.RequestException as e:
            logger.error(f"SMS送信エラー: {str(e)}")
            return {"success": False, "error": str(e)}
        except ValueError as e:
            logger.error(f"SMSレスポンスのパースエラー: {str(e)}")
            return {"success": False, "error": str(e)}
        finally:
            session.close()

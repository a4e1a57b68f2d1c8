"""依存注入モジュール"""
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from cryptoalert.database import get_db
from cryptoalert.models.user import User
from cryptoalert.services.alert_monitor import AlertMonitor
from cryptoalert.services.alert_service import AlertService


async def get_current_user(
    x_user_id: str = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """
    現在のユーザーを取得
    認証はゲートウェイ側で行い、ユーザーIDは X-User-Id ヘッダーで渡される
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="認証情報が無効です",
    )

    if not x_user_id:
        raise credentials_exception

    user = db.query(User).filter(User.id == x_user_id).first()
    if user is None:
        raise credentials_exception

    return user


def get_monitor(request: Request) -> AlertMonitor:
    return request.app.state.monitor


def get_alert_service(request: Request) -> AlertService:
    return request.app.state.alert_service

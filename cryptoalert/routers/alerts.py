"""
Alert API エンドポイント
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from cryptoalert.dependencies import get_alert_service, get_current_user
from cryptoalert.models.user import User
from cryptoalert.schemas.alert import (
    AlertCreate,
    AlertListResponse,
    AlertResponse,
    AlertType,
    AlertUpdate,
    MessageResponse,
)
from cryptoalert.services.alert_service import AlertService
from cryptoalert.services.alert_store import AlertLimitError, AlertNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND, detail="アラートが見つかりません"
    )


@router.post("", response_model=AlertResponse, status_code=status.HTTP_201_CREATED)
def create_alert(
    request: AlertCreate,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラートを作成
    """
    try:
        alert = service.create_alert(current_user.id, request)
    except AlertLimitError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return AlertResponse.from_state(alert, datetime.now())


@router.get("", response_model=AlertListResponse)
def list_alerts(
    is_active: Optional[bool] = Query(None, description="有効/無効で絞り込み"),
    symbol: Optional[str] = Query(None, description="銘柄シンボル"),
    alert_type: Optional[AlertType] = Query(None, description="アラート種別"),
    limit: int = Query(50, ge=1, le=200, description="取得件数"),
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラート一覧を取得（新しい順）
    """
    alerts = service.list_alerts(
        current_user.id,
        is_active=is_active,
        symbol=symbol,
        alert_type=alert_type,
        limit=limit,
    )
    now = datetime.now()
    result = [AlertResponse.from_state(alert, now) for alert in alerts]
    return AlertListResponse(alerts=result, count=len(result))


@router.get("/{alert_id}", response_model=AlertResponse)
def get_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    try:
        alert = service.get_alert(current_user.id, alert_id)
    except AlertNotFoundError:
        raise _not_found()
    return AlertResponse.from_state(alert, datetime.now())


@router.patch("/{alert_id}", response_model=AlertResponse)
def update_alert(
    alert_id: str,
    request: AlertUpdate,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラートを更新（指定したフィールドのみ）
    """
    try:
        alert = service.update_alert(current_user.id, alert_id, request)
    except AlertNotFoundError:
        raise _not_found()
    return AlertResponse.from_state(alert, datetime.now())


@router.post("/{alert_id}/pause", response_model=AlertResponse)
def pause_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラートを一時停止
    """
    try:
        alert = service.pause_alert(current_user.id, alert_id)
    except AlertNotFoundError:
        raise _not_found()
    return AlertResponse.from_state(alert, datetime.now())


@router.post("/{alert_id}/resume", response_model=AlertResponse)
def resume_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラートを再開
    """
    try:
        alert = service.resume_alert(current_user.id, alert_id)
    except AlertNotFoundError:
        raise _not_found()
    return AlertResponse.from_state(alert, datetime.now())


@router.delete("/{alert_id}", response_model=MessageResponse)
def delete_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
    current_user: User = Depends(get_current_user),
):
    """
    アラートを削除
    """
    try:
        service.delete_alert(current_user.id, alert_id)
    except AlertNotFoundError:
        raise _not_found()
    return MessageResponse(message="アラートを削除しました")

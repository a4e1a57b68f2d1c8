"""
監視状態のAPIエンドポイント
スケジューラーの状態、キャッシュ中の価格、統計
"""
from fastapi import APIRouter, Depends

from cryptoalert.dependencies import get_alert_service, get_monitor
from cryptoalert.services.alert_monitor import AlertMonitor
from cryptoalert.services.alert_service import AlertService

router = APIRouter(prefix="/api/monitor", tags=["Monitor"])


@router.get("/status")
def get_monitor_status(monitor: AlertMonitor = Depends(get_monitor)):
    """監視ジョブの状態"""
    return monitor.get_status()


@router.get("/prices")
def get_cached_prices(monitor: AlertMonitor = Depends(get_monitor)):
    """キャッシュ中の最新価格"""
    prices = monitor.price_cache.snapshot()
    return {
        "count": len(prices),
        "prices": {symbol: obs.model_dump(mode="json") for symbol, obs in prices.items()},
        "cache": monitor.price_cache.get_stats(),
    }


@router.get("/stats")
def get_stats(service: AlertService = Depends(get_alert_service)):
    """アラート統計"""
    return service.get_stats()

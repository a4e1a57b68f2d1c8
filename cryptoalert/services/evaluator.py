"""
アラート判定ロジック
アラートと最新の価格観測値からトリガーするかを決める（副作用なし）
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from cryptoalert.schemas.alert import AlertCondition, AlertState, AlertType
from cryptoalert.schemas.price import PriceObservation

logger = logging.getLogger(__name__)


def _price_above(condition: AlertCondition, observation: PriceObservation) -> bool:
    if condition.target_price is None:
        return False
    return observation.price >= condition.target_price


def _price_below(condition: AlertCondition, observation: PriceObservation) -> bool:
    if condition.target_price is None:
        return False
    return observation.price <= condition.target_price


def _price_change(condition: AlertCondition, observation: PriceObservation) -> bool:
    # timeframe に関わらず24時間変化率で比較する
    if condition.percentage_change is None:
        return False
    return abs(observation.change_24h) >= abs(condition.percentage_change)


def _volume_spike(condition: AlertCondition, observation: PriceObservation) -> bool:
    if condition.volume_threshold is None:
        return False
    return observation.volume_24h >= condition.volume_threshold


def _market_cap_change(condition: AlertCondition, observation: PriceObservation) -> bool:
    if condition.market_cap_threshold is None:
        return False
    return observation.market_cap >= condition.market_cap_threshold


RULES: Dict[AlertType, Callable[[AlertCondition, PriceObservation], bool]] = {
    AlertType.PRICE_ABOVE: _price_above,
    AlertType.PRICE_BELOW: _price_below,
    AlertType.PRICE_CHANGE: _price_change,
    AlertType.VOLUME_SPIKE: _volume_spike,
    AlertType.MARKET_CAP_CHANGE: _market_cap_change,
}


def is_evaluable(alert: AlertState, now: datetime) -> bool:
    """前提条件（有効・未トリガー・期限内・上限未到達）を満たすか"""
    if not alert.is_active or alert.is_triggered:
        return False
    if alert.is_expired(now):
        return False
    if alert.is_exhausted():
        return False
    return True


def should_trigger(
    alert: AlertState,
    observation: PriceObservation,
    now: Optional[datetime] = None,
) -> bool:
    """
    アラートをトリガーすべきか判定

    条件フィールドが欠けている場合は例外にせず False（アラートは休眠状態）

    Parameters:
        alert: 判定対象のアラート
        observation: 同じ銘柄の最新観測値
        now: 期限判定に使う現在時刻

    Returns:
        トリガーする場合 True
    """
    if now is None:
        now = datetime.now()

    if not is_evaluable(alert, now):
        return False

    rule = RULES.get(alert.alert_type)
    if rule is None:
        logger.warning(f"未知のアラート種別: alert={alert.id}, type={alert.alert_type}")
        return False

    return rule(alert.condition, observation)

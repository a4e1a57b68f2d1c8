"""
アラート通知文面の生成
アラート種別と最新の観測値から、チャネル共通のメッセージとメール用HTMLを作る
"""
from typing import Callable, Dict

from cryptoalert.config import settings
from cryptoalert.schemas.alert import AlertState, AlertType
from cryptoalert.schemas.price import PriceObservation


def _fmt(value) -> str:
    return f"{(value or 0):.2f}"


def _price_above(alert: AlertState, obs: PriceObservation) -> str:
    return (
        f"{alert.symbol} has reached ${_fmt(obs.price)}, "
        f"above your target of ${_fmt(alert.condition.target_price)}"
    )


def _price_below(alert: AlertState, obs: PriceObservation) -> str:
    return (
        f"{alert.symbol} has dropped to ${_fmt(obs.price)}, "
        f"below your target of ${_fmt(alert.condition.target_price)}"
    )


def _price_change(alert: AlertState, obs: PriceObservation) -> str:
    return (
        f"{alert.symbol} has changed by {_fmt(obs.change_24h)}% in the last 24h, "
        f"exceeding your threshold of {_fmt(alert.condition.percentage_change)}%"
    )


def _volume_spike(alert: AlertState, obs: PriceObservation) -> str:
    return (
        f"{alert.symbol} volume has spiked to ${obs.volume_24h / 1_000_000:.2f}M, "
        f"above your threshold"
    )


def _market_cap_change(alert: AlertState, obs: PriceObservation) -> str:
    return (
        f"{alert.symbol} market cap has changed significantly to "
        f"${obs.market_cap / 1_000_000_000:.2f}B"
    )


TEMPLATES: Dict[AlertType, Callable[[AlertState, PriceObservation], str]] = {
    AlertType.PRICE_ABOVE: _price_above,
    AlertType.PRICE_BELOW: _price_below,
    AlertType.PRICE_CHANGE: _price_change,
    AlertType.VOLUME_SPIKE: _volume_spike,
    AlertType.MARKET_CAP_CHANGE: _market_cap_change,
}


def render_message(alert: AlertState, observation: PriceObservation) -> str:
    """通知本文を生成（SMS・プッシュ・メール共通）"""
    template = TEMPLATES.get(alert.alert_type)
    if template is None:
        return f"{alert.symbol} alert triggered at ${_fmt(observation.price)}"
    return template(alert, observation)


def render_title(alert: AlertState) -> str:
    return f"{alert.symbol} Price Alert"


def render_email_subject(alert: AlertState) -> str:
    return f"🚨 CryptoAlert: {alert.symbol} Price Alert"


def alert_url(alert: AlertState) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/alerts/{alert.id}"


def render_email_html(
    alert: AlertState, observation: PriceObservation, message: str
) -> str:
    """アラート通知メールのHTMLを生成"""
    triggered_at = observation.observed_at.strftime("%Y-%m-%d %H:%M:%S")

    return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="UTF-8">
        </head>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <div style="background: #ff6b6b; padding: 30px 20px; text-align: center;">
                <h1 style="color: white; margin: 0; font-size: 24px;">🚨 Price Alert Triggered!</h1>
            </div>

            <h2 style="color: #333;">{alert.symbol} Alert</h2>

            <div style="background: #f8f9fa; padding: 20px; border-radius: 8px; margin: 20px 0;">
                <p style="font-size: 18px; margin: 0;">
                    <strong>{message}</strong>
                </p>
                <p style="color: #999; font-size: 14px; margin: 10px 0 0 0;">
                    Current Price: ${_fmt(observation.price)}<br>
                    24h Change: {_fmt(observation.change_24h)}%<br>
                    Triggered at: {triggered_at}
                </p>
            </div>

            <a href="{alert_url(alert)}" style="display: inline-block; background: #667eea; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px;">
                View Alert Details
            </a>

            <hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">
            <p style="color: #999; font-size: 12px;">
                This is an automated notification from CryptoAlert.
            </p>
        </body>
        </html>
        """

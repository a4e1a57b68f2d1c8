"""
価格取得サービス
CoinGecko互換APIから暗号資産の最新価格を取得する

機能:
- 銘柄シンボルの集合を1リクエストでまとめて取得
- 429/5xx の自動リトライ
- PriceObservation への整形
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from cryptoalert.config import settings
from cryptoalert.schemas.price import PriceObservation

# ============================================
# ログ設定
# ============================================
logger = logging.getLogger(__name__)

# ============================================
# 設定
# ============================================
MARKETS_PATH = "/coins/markets"
VS_CURRENCY = "usd"

# リトライ設定
MAX_RETRIES = 3
BACKOFF_FACTOR = 1  # 1秒, 2秒, 4秒...
RETRY_STATUS_CODES = [429, 500, 502, 503, 504]


# ============================================
# カスタム例外
# ============================================
class PriceSourceError(Exception):
    """価格取得APIのエラー"""

    pass


def _create_session_with_retry() -> requests.Session:
    """リトライ機能付きのセッションを作成"""
    session = requests.Session()
    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _to_float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class CoinGeckoPriceSource:
    """CoinGecko /coins/markets を使う価格ソース"""

    def __init__(
        self,
        base_url: str = settings.PRICE_API_URL,
        api_key: Optional[str] = settings.PRICE_API_KEY,
        timeout: float = settings.PRICE_API_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
        session_factory: Callable[[], requests.Session] = _create_session_with_retry,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._clock = clock
        self._session_factory = session_factory

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "CryptoAlert/1.0",
        }
        if self.api_key:
            headers["x-cg-pro-api-key"] = self.api_key
        return headers

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, PriceObservation]:
        """
        複数銘柄の最新価格を取得

        Parameters:
            symbols: 銘柄シンボル（大文字小文字は問わない）

        Returns:
            シンボル（大文字）→ PriceObservation。APIが返さなかった銘柄は含まない

        Raises:
            PriceSourceError: API呼び出しに失敗した場合
        """
        wanted = {s.strip().upper() for s in symbols if s and s.strip()}
        if not wanted:
            return {}

        params = {
            "vs_currency": VS_CURRENCY,
            "symbols": ",".join(sorted(s.lower() for s in wanted)),
            "order": "market_cap_desc",
            "per_page": 250,
            "page": 1,
            "price_change_percentage": "24h",
        }

        session = self._session_factory()
        try:
            logger.debug(f"価格API呼び出し: symbols={params['symbols']}")
            response = session.get(
                f"{self.base_url}{MARKETS_PATH}",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            logger.warning("価格APIタイムアウト")
            raise PriceSourceError("価格APIリクエストがタイムアウトしました")
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else "unknown"
            logger.warning(f"価格API HTTPエラー: {status_code}")
            raise PriceSourceError(f"HTTPエラー: {status_code}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"価格APIリクエストエラー: {str(e)}")
            raise PriceSourceError(f"リクエストエラー: {str(e)}")
        except ValueError as e:
            raise PriceSourceError(f"レスポンスのパースに失敗しました: {str(e)}")
        finally:
            session.close()

        if not isinstance(data, list):
            raise PriceSourceError("想定外のレスポンス形式です")

        return self._parse_markets(data, wanted)

    def _parse_markets(
        self, coins: list, wanted: set
    ) -> Dict[str, PriceObservation]:
        """時価総額順に並んでいる前提で、同じシンボルは最初の1件を採用"""
        observed_at = self._clock()
        prices: Dict[str, PriceObservation] = {}

        for coin in coins:
            if not isinstance(coin, dict):
                continue
            symbol = str(coin.get("symbol") or "").upper()
            if symbol not in wanted or symbol in prices:
                continue
            if coin.get("current_price") is None:
                continue

            prices[symbol] = PriceObservation(
                symbol=symbol,
                price=_to_float(coin.get("current_price")),
                change_24h=_to_float(coin.get("price_change_percentage_24h")),
                volume_24h=_to_float(coin.get("total_volume")),
                market_cap=_to_float(coin.get("market_cap")),
                observed_at=observed_at,
            )

        missing = wanted - prices.keys()
        if missing:
            logger.info(f"価格が取得できなかった銘柄: {sorted(missing)}")

        return prices

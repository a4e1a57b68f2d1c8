"""
テスト用の共通設定・フィクスチャ
"""

import json
import os
from datetime import datetime, timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# テスト用の環境変数を設定（cryptoalert.mainをインポートする前に設定）
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["MONITOR_ENABLED"] = "false"

from cryptoalert import models  # noqa: E402,F401
from cryptoalert.database import Base, get_db  # noqa: E402
from cryptoalert.main import app  # noqa: E402
from cryptoalert.models.user import User  # noqa: E402
from cryptoalert.schemas.alert import AlertCreate  # noqa: E402
from cryptoalert.schemas.price import PriceObservation  # noqa: E402
from cryptoalert.services.alert_monitor import AlertMonitor  # noqa: E402
from cryptoalert.services.alert_service import AlertService  # noqa: E402
from cryptoalert.services.alert_store import AlertStore  # noqa: E402
from cryptoalert.services.notification_service import build_notification_router  # noqa: E402
from cryptoalert.services.rate_limiter import NotificationRateLimiter, RateLimit  # noqa: E402
from cryptoalert.schemas.notification import ChannelName  # noqa: E402
from cryptoalert.services.webpush_service import PushResult  # noqa: E402


# テスト用のインメモリSQLiteデータベース
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

START_TIME = datetime(2024, 1, 15, 12, 0, 0)


def override_get_db():
    """テスト用のDBセッションを提供"""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


# ============================================
# テストダブル
# ============================================
class FakeClock:
    """手動で進める時計"""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """レート制限用の経過秒"""

    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakePriceSource:
    """価格ソースのフェイク（呼び出し履歴を記録）"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.prices = {}
        self.calls = []
        self.error: Optional[Exception] = None

    def set_price(
        self,
        symbol: str,
        price: float,
        change_24h: float = 0.0,
        volume_24h: float = 0.0,
        market_cap: float = 0.0,
    ) -> None:
        self.prices[symbol] = dict(
            price=price,
            change_24h=change_24h,
            volume_24h=volume_24h,
            market_cap=market_cap,
        )

    def get_prices(self, symbols):
        requested = set(symbols)
        self.calls.append(requested)
        if self.error is not None:
            raise self.error
        return {
            symbol: PriceObservation(symbol=symbol, observed_at=self.clock(), **self.prices[symbol])
            for symbol in requested
            if symbol in self.prices
        }


class FakeEmailService:
    def __init__(self):
        self.sent = []
        self.error: Optional[str] = None

    def send_email(self, to, subject, body, html=None) -> dict:
        if self.error:
            return {"success": False, "error": self.error}
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html})
        return {"success": True, "id": f"email-{len(self.sent)}"}


class FakeSmsService:
    def __init__(self):
        self.sent = []
        self.error: Optional[str] = None

    def send_sms(self, to, body) -> dict:
        if self.error:
            return {"success": False, "error": self.error}
        self.sent.append({"to": to, "body": body})
        return {"success": True, "id": f"SM{len(self.sent)}"}


class FakeWebPushService:
    def __init__(self):
        self.sent = []
        self.result = PushResult.SUCCESS

    def send_push(self, subscription_info, title, body, url=None, data=None, urgency="normal") -> PushResult:
        if self.result == PushResult.SUCCESS:
            self.sent.append({"title": title, "body": body, "url": url, "data": data, "urgency": urgency})
        return self.result


class FakeTransport:
    def __init__(self):
        self.published = []

    def publish(self, topic, payload, user_id=None) -> None:
        self.published.append({"topic": topic, "payload": payload, "user_id": user_id})

    def topics(self):
        return [p["topic"] for p in self.published]


# ============================================
# フィクスチャ
# ============================================
@pytest.fixture(scope="function")
def db_session():
    """各テスト用のDBセッション"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def store(db_session, clock):
    return AlertStore(session_factory=TestingSessionLocal, max_alerts_per_user=10, clock=clock)


@pytest.fixture
def test_user(db_session):
    """全チャネルを有効にしたテスト用ユーザー"""
    user = User(
        id="user-1",
        email="trader@example.com",
        phone_number="+15551234567",
        push_subscription=json.dumps({
            "endpoint": "https://push.example.com/sub/abc",
            "keys": {"p256dh": "key", "auth": "secret"},
        }),
        email_enabled=True,
        sms_enabled=True,
        push_enabled=True,
    )
    db_session.add(user)
    db_session.commit()
    return user.id


@pytest.fixture
def other_user(db_session):
    user = User(id="user-2", email="other@example.com")
    db_session.add(user)
    db_session.commit()
    return user.id


@pytest.fixture
def price_source(clock):
    return FakePriceSource(clock)


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def sms_service():
    return FakeSmsService()


@pytest.fixture
def webpush_service():
    return FakeWebPushService()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def rate_limiter(timer):
    return NotificationRateLimiter(
        limits={
            ChannelName.EMAIL: RateLimit(100, 3600),
            ChannelName.SMS: RateLimit(20, 3600),
            ChannelName.PUSH: RateLimit(200, 3600),
        },
        timer=timer,
    )


@pytest.fixture
def router(rate_limiter, email_service, sms_service, webpush_service, clock):
    return build_notification_router(
        rate_limiter=rate_limiter,
        email_service=email_service,
        sms_service=sms_service,
        webpush_service=webpush_service,
        clock=clock,
    )


@pytest.fixture
def monitor(store, price_source, router, transport, clock):
    monitor = AlertMonitor(
        store=store,
        price_source=price_source,
        router=router,
        transport=transport,
        clock=clock,
    )
    yield monitor
    monitor.stop()


@pytest.fixture
def make_alert(store, test_user):
    """AlertCreate の既定値を上書きしてアラートを作成"""

    def _make(user_id: str = None, **overrides):
        data = {
            "symbol": "BTC",
            "name": "BTC breakout",
            "alert_type": "price_above",
            "condition": {"target_price": 45000},
            "repeat_interval": 0,
            "max_triggers": 1,
        }
        data.update(overrides)
        return store.create(user_id or test_user, AlertCreate(**data))

    return _make


@pytest.fixture(scope="function")
def client(db_session, store, monitor, clock):
    """テスト用のAPIクライアント（監視ジョブは起動しない）"""
    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        app.state.monitor = monitor
        app.state.alert_service = AlertService(store, monitor, clock=clock)
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(test_user):
    """認証ヘッダー（ゲートウェイが付与するユーザーID）"""
    return {"X-User-Id": test_user}

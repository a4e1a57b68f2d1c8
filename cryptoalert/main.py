"""
FastAPI メインアプリケーション
CryptoAlert - 暗号資産の価格アラート通知
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

load_dotenv()

from cryptoalert.config import settings
from cryptoalert.database import engine, init_db
from cryptoalert.routers.alerts import router as alerts_router
from cryptoalert.routers.monitor import router as monitor_router
from cryptoalert.routers.realtime import router as realtime_router
from cryptoalert.services.alert_monitor import build_alert_monitor
from cryptoalert.services.alert_service import AlertService
from cryptoalert.services.alert_store import AlertStore
from cryptoalert.services.realtime import RealtimeTransport

# ログ設定
logging.basicConfig(
    level=settings.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================
# ライフサイクル管理
# ============================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションの起動・終了処理"""
    logger.info("🚀 CryptoAlert Backend starting...")
    logger.info(f"Database engine: {engine.url}")

    try:
        init_db()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")

    transport = RealtimeTransport()
    transport.bind_loop(asyncio.get_running_loop())
    store = AlertStore()
    monitor = build_alert_monitor(store=store, transport=transport)

    app.state.transport = transport
    app.state.monitor = monitor
    app.state.alert_service = AlertService(store, monitor)

    if settings.MONITOR_ENABLED:
        monitor.start()
    else:
        logger.info("アラート監視は無効です（MONITOR_ENABLED=false）")

    yield

    logger.info("👋 CryptoAlert Backend shutting down...")
    app.state.monitor.stop()
    engine.dispose()


# ============================================
# FastAPI アプリケーション
# ============================================
app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="暗号資産の価格アラート - 条件を満たすとメール・SMS・プッシュで通知",
    version=settings.VERSION,
    lifespan=lifespan,
)

# CORS設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://localhost:8000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    max_age=3600,
)

# ルータ登録
app.include_router(alerts_router)
app.include_router(monitor_router)
app.include_router(realtime_router)


# ============================================
# 基本エンドポイント
# ============================================
@app.get("/")
async def root():
    """ルートエンドポイント"""
    return {
        "message": "CryptoAlert Backend API",
        "version": settings.VERSION,
        "status": "running",
        "docs": "/docs",
        "endpoints": {
            "health": "/api/health",
            "alerts": "/api/alerts",
            "monitor": "/api/monitor/status",
            "websocket": "/ws",
        },
    }


@app.get("/api/health")
async def health_check():
    """ヘルスチェックエンドポイント"""
    monitor = getattr(app.state, "monitor", None)
    return {
        "status": "ok",
        "service": "CryptoAlert Backend",
        "monitor_running": monitor.running if monitor is not None else False,
        "timestamp": datetime.now().isoformat(),
    }

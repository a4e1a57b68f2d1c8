from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from cryptoalert.config import settings

DATABASE_URL = settings.DATABASE_URL

engine_kwargs = {
    "pool_pre_ping": True,
    "echo": settings.SQL_ECHO,
}

# SQLite はスケジューラースレッドからも使うためスレッドチェックを外す
if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if ":memory:" in DATABASE_URL:
        engine_kwargs["poolclass"] = StaticPool
else:
    engine_kwargs.update(
        pool_size=5,  # 同時接続
        max_overflow=10,  # プールがいっぱいの時の追加接続
        pool_recycle=3600,  # 1時間で接続をリサイクル
    )

engine = create_engine(DATABASE_URL, **engine_kwargs)

# セッションファクトリー
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Base Class for ORM models
class Base(DeclarativeBase):
    pass


def init_db() -> None:
    """テーブルを作成（存在しない場合のみ）"""
    # モデルを登録してから create_all する
    from cryptoalert import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# 依存性注入用のジェネレータ
def get_db():
    """
    FastAPIの依存性注入で使用するDBセッション

    使用例:
        from sqlalchemy.orm import Session
        from cryptoalert.database import get_db

        @app.get("/users")
        def get_users(db: Session = Depends(get_db)):
            users = db.query(User).all()
            return users
    """

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

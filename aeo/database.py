"""
数据库初始化
- 使用 SQLAlchemy 2.0 风格
- 默认 SQLite（开发环境），生产可切换 PostgreSQL
"""
from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .config import settings


class Base(DeclarativeBase):
    """ORM 基类"""


def _ensure_dir(path: str) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def _ensure_sqlite_dir(url: str) -> None:
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            _ensure_dir(Path(db_path).parent.as_posix())


_ensure_sqlite_dir(settings.DATABASE_URL)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def ensure_database_schema(bind=None) -> None:
    """按 ORM 元数据直接建表（未启用 Alembic 时使用）。"""
    # 延迟导入，避免循环
    from .models import Base as ModelsBase  # noqa: WPS433

    ModelsBase.metadata.create_all(bind=bind or engine)


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "ensure_database_schema",
]

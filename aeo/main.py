"""
应用入口：
- FastAPI 初始化、CORS、路由挂载
- 启动时执行 Alembic 迁移，回收遗留运行并启动调度
"""
from __future__ import annotations

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import settings
from .database import ensure_database_schema
from .dependencies import get_scheduler
from .routers import crawls as crawls_router


def _apply_timezone() -> None:
    """根据 .env 中的 TIMEZONE 应用进程时区（影响日志切割的本地午夜）。"""
    if not settings.TIMEZONE:
        return
    os.environ["TZ"] = str(settings.TIMEZONE)
    # Windows 不支持 tzset
    if hasattr(time, "tzset"):
        time.tzset()


def _configure_logging() -> None:
    log_dir = Path(settings.LOG_DIR or "logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "aeo.log"
    root = logging.getLogger()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    # 文件日志按天切割（幂等）
    file_handler = None
    for h in root.handlers:
        if isinstance(h, (RotatingFileHandler, TimedRotatingFileHandler)) and getattr(h, "baseFilename", None) == str(log_file.resolve()):
            file_handler = h
            break
    if file_handler is None:
        file_handler = TimedRotatingFileHandler(
            filename=log_file,
            when="midnight",
            interval=1,
            backupCount=14,
            encoding="utf-8",
            utc=False,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # uvicorn.access 传播到 root，由 root 的处理器统一输出
    ua_logger = logging.getLogger("uvicorn.access")
    ua_logger.setLevel(logging.INFO)
    ua_logger.disabled = False
    ua_logger.propagate = True
    if any(not isinstance(h, (RotatingFileHandler, TimedRotatingFileHandler)) for h in ua_logger.handlers):
        ua_logger.handlers.clear()

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers
    )
    if not has_console:
        console = logging.StreamHandler(stream=sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

    if root.level == logging.NOTSET or root.level > logging.INFO:
        root.setLevel(logging.INFO)


_apply_timezone()
_configure_logging()
app = FastAPI(title=settings.SITE_NAME, version="0.1.0")

# 从 X-Forwarded-* 恢复真实 client；配置包含 "*" 时信任所有上游
_trusted = settings.FORWARDED_TRUSTED_IPS
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*" if "*" in _trusted else _trusted)

cors_origins = settings.FRONTEND_ORIGINS or ["http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in cors_origins else cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _AccessLogASGI:
    """应用层访问日志兜底（ASGI 包裹器）。

    直接在 ASGI 层拦截 HTTP 请求，即便 Uvicorn 未开启 --access-log 也输出访问日志；
    写入 logger `uvicorn.access` 并传播到 root。
    """

    def __init__(self, app):
        self.app = app
        self.logger = logging.getLogger("uvicorn.access")

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        client = scope.get("client")
        addr = f"{client[0]}:{client[1]}" if client else "-"
        hdrs = {k.decode("latin1").lower(): v.decode("latin1") for k, v in scope.get("headers") or []}
        xff = hdrs.get("x-forwarded-for")
        if xff:
            addr = xff.split(",")[0].strip()
        method = scope.get("method", "-")
        path = scope.get("path", "/")
        qs = (scope.get("query_string") or b"").decode("utf-8", errors="ignore")
        if qs:
            path = f"{path}?{qs}"
        http_version = scope.get("http_version", "1.1")
        status_code = 500

        async def _send(message):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 200))
            return await send(message)

        try:
            return await self.app(scope, receive, _send)
        finally:
            self.logger.info('%s - "%s %s HTTP/%s" %s', addr, method, path, http_version, status_code)


def _run_alembic_upgrade_head() -> None:
    """通过代码执行 Alembic 升级到 head（幂等）。

    空库直接 upgrade；已有业务表但无版本记录时 stamp 对齐。
    """
    from alembic import command
    from alembic.config import Config
    from sqlalchemy import create_engine, inspect

    root = Path(__file__).resolve().parent.parent
    cfg = Config(str(root / "alembic.ini"))
    cfg.set_main_option("script_location", str(root / "migrations"))
    cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

    eng = create_engine(settings.DATABASE_URL)
    try:
        insp = inspect(eng)
        has_ver = insp.has_table("alembic_version")
        has_runs = insp.has_table("crawl_runs")
    finally:
        eng.dispose()

    if not has_ver and has_runs:
        command.stamp(cfg, "head")
    else:
        command.upgrade(cfg, "head")


@app.on_event("startup")
def on_startup():
    if settings.AUTO_MIGRATE:
        try:
            _run_alembic_upgrade_head()
        except Exception as exc:  # noqa: BLE001
            logging.getLogger(__name__).warning("alembic upgrade 失败，改用 ORM 建表：%s", exc)
            ensure_database_schema()
    else:
        ensure_database_schema()
    # 迁移执行可能修改了 logging（alembic.ini），此处重新校准
    _configure_logging()
    boot_logger = logging.getLogger("aeo.boot")
    if settings.START_SCHEDULER:
        scheduler = get_scheduler()
        recovered = scheduler.recover()
        started = scheduler.dispatch()
        boot_logger.info("抓取调度器已启动：回收 %s 个运行，启动 %s 个", recovered, len(started))
    boot_logger.info("应用启动完成（APP_ACCESS_LOG=%s）", settings.APP_ACCESS_LOG)


@app.on_event("shutdown")
def on_shutdown():
    if settings.START_SCHEDULER:
        get_scheduler().shutdown()


@app.get("/health")
def healthcheck():
    """返回应用健康状态，用于本地/容器探活"""
    return {"status": "ok"}


app.include_router(crawls_router.router)


# uvicorn "aeo.main:get_app" --factory
_asgi_app = _AccessLogASGI(app) if settings.APP_ACCESS_LOG else app


def get_app():
    return _asgi_app

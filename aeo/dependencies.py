"""
依赖项：数据库会话、抓取调度器、调用方授权
"""
from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from .auth import Caller, caller_from_token, get_token_from_request
from .crawler.scheduler import RunScheduler
from .database import SessionLocal

_scheduler: Optional[RunScheduler] = None


def get_db():
    """获取 DB 会话，使用后自动关闭"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scheduler() -> RunScheduler:
    """进程内唯一的调度器（首次使用时创建）"""
    global _scheduler
    if _scheduler is None:
        _scheduler = RunScheduler()
    return _scheduler


def get_caller(request: Request) -> Caller:
    caller = caller_from_token(get_token_from_request(request))
    if caller is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="未认证")
    return caller


def require_viewer(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.may_view:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权查看抓取任务")
    return caller


def require_crawl_operator(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.may_operate_crawls:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权操作抓取任务")
    return caller

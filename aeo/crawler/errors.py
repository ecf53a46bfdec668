"""
抓取子系统的异常分类

- FetchFailure：单页抓取失败，记录在页面上，不影响整体运行
- BudgetExceeded：token 预算不足，运行暂停，可在提高/清除上限后恢复
- InvalidTransition：当前状态不允许的暂停/恢复请求，直接返回给调用方
- SchedulingConflict：同一项目已有排队中/运行中的任务
- PersistenceFailure：存储或配置损坏，运行失败且不可恢复
"""
from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """抓取子系统异常基类"""


class FetchFailure(CrawlError):
    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class BudgetExceeded(CrawlError):
    def __init__(self, requested: int, used: int, limit: int):
        super().__init__(f"token 预算不足：已用 {used}，预估 {requested}，上限 {limit}")
        self.requested = requested
        self.used = used
        self.limit = limit


class InvalidTransition(CrawlError):
    def __init__(self, run_id: int, current: str, target: str):
        super().__init__(f"运行 {run_id} 当前状态为 {current}，无法变更为 {target}")
        self.run_id = run_id
        self.current = current
        self.target = target


class SchedulingConflict(CrawlError):
    def __init__(self, project_id: int, active_run_id: int):
        super().__init__(f"项目 {project_id} 已有进行中的抓取任务（#{active_run_id}）")
        self.project_id = project_id
        self.active_run_id = active_run_id


class PersistenceFailure(CrawlError):
    """存储写入失败或持久化状态不一致"""


__all__ = [
    "CrawlError",
    "FetchFailure",
    "BudgetExceeded",
    "InvalidTransition",
    "SchedulingConflict",
    "PersistenceFailure",
]

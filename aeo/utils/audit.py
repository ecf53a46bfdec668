"""
操作审计工具函数（统一在此落库，便于跨路由复用）

注意：仅记录运行状态与计数，不写入完整配置快照。
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from ..auth import Caller
from ..models import CrawlRun, OperationAuditLog


def summarize_run(run: CrawlRun) -> dict[str, Any]:
    """提炼运行的关键字段"""
    snapshot = run.config_snapshot or {}
    return {
        "id": run.id,
        "project_id": run.project_id,
        "run_type": run.run_type,
        "status": run.status,
        "pages_processed": run.pages_processed,
        "token_usage": run.token_usage,
        "token_limit": snapshot.get("token_limit"),
    }


def record_operation(
    db: Session,
    *,
    action: str,
    target_type: str,
    target_id: Optional[int] = None,
    target_name: Optional[str] = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    actor: Optional[Caller] = None,
    actor_ip: Optional[str] = None,
) -> OperationAuditLog:
    """写入操作审计记录（由调用方控制事务提交时机）。"""
    rec = OperationAuditLog(
        action=action,
        target_type=target_type,
        target_id=target_id,
        target_name=target_name,
        before=before or None,
        after=after or None,
        actor_id=actor.subject if actor else None,
        actor_role=actor.role if actor else None,
        actor_ip=actor_ip,
    )
    db.add(rec)
    # 不在这里 commit，交由上层路由统一提交
    return rec

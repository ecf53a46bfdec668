"""抓取运行接口

- POST /api/projects/{project_id}/crawls   启动抓取（runType）
- GET  /api/projects/{project_id}/crawls   运行列表（可按 status 过滤，最新在前）
- GET  /api/crawls/{run_id}                运行状态
- POST /api/crawls/{run_id}/pause          暂停（排队中立即生效，执行中在页面边界生效）
- POST /api/crawls/{run_id}/resume         恢复（可同时提高或清除 token 上限）
- POST /api/crawls/{run_id}/cancel         取消（运行以 failed 结束）
- GET  /api/crawls/{run_id}/pages          本次运行涉及的页面及评分
- GET  /api/crawls/{run_id}/budget         token 预算使用情况
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..auth import Caller
from ..constants import CRAWL_RUN_LIST_LIMIT, RUN_STATUSES
from ..crawler.errors import InvalidTransition, SchedulingConflict
from ..crawler.scheduler import RunScheduler
from ..dependencies import get_db, get_scheduler, require_crawl_operator, require_viewer
from ..models import CrawlRun, Page, PageSnapshot, Project
from ..schemas import BudgetOut, CrawlPageOut, CrawlResume, CrawlRunOut, CrawlStart, PageScoreOut
from ..utils.audit import record_operation, summarize_run

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["crawls"])


def _client_ip(request: Request) -> Optional[str]:
    # 代理头已由 ProxyHeadersMiddleware 按可信来源还原
    client = request.client
    return client.host if client else None


def _run_out(run: CrawlRun) -> CrawlRunOut:
    snapshot = run.config_snapshot or {}
    return CrawlRunOut(
        id=run.id,
        project_id=run.project_id,
        run_type=run.run_type,
        status=run.status,
        pages_discovered=run.pages_discovered or 0,
        pages_processed=run.pages_processed or 0,
        token_usage=run.token_usage or 0,
        token_limit=snapshot.get("token_limit") or None,
        pause_requested=bool(run.pause_requested),
        cancel_requested=bool(run.cancel_requested),
        error_message=run.error_message,
        created_by=run.created_by,
        created_at=run.created_at,
        started_at=run.started_at,
        completed_at=run.completed_at,
    )


def _get_run_or_404(db: Session, run_id: int) -> CrawlRun:
    run = db.get(CrawlRun, run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="抓取任务不存在")
    return run


def _audit(db: Session, action: str, run: CrawlRun, caller: Caller, request: Request, before: Optional[dict] = None) -> None:
    record_operation(
        db,
        action=action,
        target_type="crawl_run",
        target_id=run.id,
        target_name=f"{run.run_type}#{run.id}",
        before=before,
        after=summarize_run(run),
        actor=caller,
        actor_ip=_client_ip(request),
    )
    db.commit()


@router.post("/projects/{project_id}/crawls", status_code=status.HTTP_201_CREATED)
def start_crawl(
    project_id: int,
    payload: CrawlStart,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: RunScheduler = Depends(get_scheduler),
    caller: Caller = Depends(require_crawl_operator),
) -> CrawlRunOut:
    if not db.get(Project, project_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="项目不存在")
    try:
        run = scheduler.enqueue(project_id, payload.run_type, created_by=caller.subject)
    except SchedulingConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    _audit(db, "crawl.start", run, caller, request)
    return _run_out(run)


@router.get("/projects/{project_id}/crawls")
def list_project_crawls(
    project_id: int,
    status_filter: Optional[str] = Query(None, alias="status", description="按运行状态过滤"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_viewer),
) -> list[CrawlRunOut]:
    if not db.get(Project, project_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="项目不存在")
    qry = db.query(CrawlRun).filter(CrawlRun.project_id == project_id)
    if status_filter:
        if status_filter not in RUN_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"未知的运行状态：{status_filter}")
        qry = qry.filter(CrawlRun.status == status_filter)
    rows = qry.order_by(CrawlRun.created_at.desc(), CrawlRun.id.desc()).limit(CRAWL_RUN_LIST_LIMIT).all()
    return [_run_out(r) for r in rows]


@router.get("/crawls/{run_id}")
def get_crawl(
    run_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_viewer),
) -> CrawlRunOut:
    return _run_out(_get_run_or_404(db, run_id))


@router.post("/crawls/{run_id}/pause")
def pause_crawl(
    run_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: RunScheduler = Depends(get_scheduler),
    caller: Caller = Depends(require_crawl_operator),
) -> CrawlRunOut:
    before = summarize_run(_get_run_or_404(db, run_id))
    try:
        run = scheduler.pause(run_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    _audit(db, "crawl.pause", run, caller, request, before=before)
    return _run_out(run)


@router.post("/crawls/{run_id}/resume")
def resume_crawl(
    run_id: int,
    request: Request,
    payload: Optional[CrawlResume] = Body(None),
    db: Session = Depends(get_db),
    scheduler: RunScheduler = Depends(get_scheduler),
    caller: Caller = Depends(require_crawl_operator),
) -> CrawlRunOut:
    before = summarize_run(_get_run_or_404(db, run_id))
    payload = payload or CrawlResume()
    try:
        run = scheduler.resume(
            run_id,
            token_limit=payload.token_limit,
            clear_token_limit=payload.clear_token_limit,
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except SchedulingConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    _audit(db, "crawl.resume", run, caller, request, before=before)
    return _run_out(run)


@router.post("/crawls/{run_id}/cancel")
def cancel_crawl(
    run_id: int,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: RunScheduler = Depends(get_scheduler),
    caller: Caller = Depends(require_crawl_operator),
) -> CrawlRunOut:
    before = summarize_run(_get_run_or_404(db, run_id))
    try:
        run = scheduler.cancel(run_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    _audit(db, "crawl.cancel", run, caller, request, before=before)
    return _run_out(run)


@router.get("/crawls/{run_id}/pages")
def list_crawl_pages(
    run_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_viewer),
) -> list[CrawlPageOut]:
    _get_run_or_404(db, run_id)
    latest: dict[int, PageSnapshot] = {}
    for snap in db.query(PageSnapshot).filter(PageSnapshot.crawl_run_id == run_id).order_by(PageSnapshot.id.asc()):
        latest[snap.page_id] = snap
    # 抓取失败的页面没有快照，仅记录在 Page.last_error
    failed = db.query(Page).filter(Page.last_crawl_run_id == run_id)
    if latest:
        failed = failed.filter(Page.id.notin_(list(latest)))
    pages = {p.id: p for p in failed.all()}
    pages.update({snap.page_id: snap.page for snap in latest.values()})

    items: list[CrawlPageOut] = []
    for page_id in sorted(pages):
        page = pages[page_id]
        snap = latest.get(page_id)
        items.append(
            CrawlPageOut(
                page_id=page.id,
                url=page.url,
                page_type=page.page_type,
                last_error=page.last_error,
                content_hash=snap.content_hash if snap else None,
                from_cache=bool(snap.from_cache) if snap else False,
                word_count=snap.word_count if snap else 0,
                captured_at=snap.captured_at if snap else None,
                score=PageScoreOut.model_validate(snap.score) if snap and snap.score else None,
            )
        )
    return items


@router.get("/crawls/{run_id}/budget")
def get_crawl_budget(
    run_id: int,
    db: Session = Depends(get_db),
    scheduler: RunScheduler = Depends(get_scheduler),
    caller: Caller = Depends(require_viewer),
) -> BudgetOut:
    _get_run_or_404(db, run_id)
    stats = scheduler.budget(run_id)
    return BudgetOut(run_id=run_id, **stats)

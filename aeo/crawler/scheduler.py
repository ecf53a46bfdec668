"""
抓取运行调度器

- 同一项目同一时刻最多一个 queued/running 运行，否则 SchedulingConflict
- 全局并发上限 MAX_CONCURRENT_RUNS，按 id 先进先出准入
- 每个运行在独立线程中执行；运行结束后自动准入下一个
- 服务启动时 recover() 回收上次进程遗留的 running 运行
- 编排器实例只在工作线程存活期间缓存，线程退出后移除
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..constants import ACTIVE_STATUSES, STATUS_PAUSED, STATUS_QUEUED, STATUS_RUNNING
from ..database import SessionLocal
from ..models import CrawlRun, Project
from ..schemas import CrawlConfig
from .cache import ContentCache
from .collaborators import CrawlCollaborators, HttpFetcher, SitemapDiscovery
from .errors import InvalidTransition, SchedulingConflict
from .ledger import EncoderRegistry
from .orchestrator import CrawlRunOrchestrator
from .scoring import OpenAIScorer

logger = logging.getLogger(__name__)


def default_collaborators(config: CrawlConfig) -> CrawlCollaborators:
    fetcher = HttpFetcher(user_agent=config.user_agent)
    return CrawlCollaborators(fetcher=fetcher, sitemaps=SitemapDiscovery(fetcher), scorer=OpenAIScorer())


def build_config_snapshot(project: Project, run_type: str) -> dict:
    """启动时复制项目配置；运行期间项目编辑不影响该副本"""
    return {
        "base_url": project.target_url,
        "run_type": run_type,
        "user_agent": project.user_agent or settings.CRAWL_USER_AGENT,
        "depth_limit": project.depth_limit if project.depth_limit is not None else settings.DEFAULT_DEPTH_LIMIT,
        "sample_size": project.sample_size,
        "token_limit": project.token_limit,
        "excluded_url_patterns": list(project.excluded_url_patterns or []),
        "rubric_version": settings.RUBRIC_VERSION,
    }


class RunScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        collaborators_factory: Callable[[CrawlConfig], CrawlCollaborators] = default_collaborators,
        *,
        max_concurrent_runs: Optional[int] = None,
        encoder_registry: Optional[EncoderRegistry] = None,
        crawl_delay_ms: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._collaborators_factory = collaborators_factory
        self.max_concurrent_runs = max(1, max_concurrent_runs or settings.MAX_CONCURRENT_RUNS)
        self._encoders = encoder_registry or EncoderRegistry()
        self._cache = ContentCache()
        self._crawl_delay_ms = crawl_delay_ms
        self._orchestrators: Dict[int, CrawlRunOrchestrator] = {}
        self._threads: Dict[int, threading.Thread] = {}
        self._lock = threading.RLock()
        self._closed = False

    def _build(self, run_id: int) -> CrawlRunOrchestrator:
        return CrawlRunOrchestrator(
            run_id,
            self._session_factory,
            self._collaborators_factory,
            encoder_registry=self._encoders,
            cache=self._cache,
            crawl_delay_ms=self._crawl_delay_ms,
        )

    def orchestrator(self, run_id: int) -> CrawlRunOrchestrator:
        with self._lock:
            orch = self._orchestrators.get(run_id)
            if orch is None:
                orch = self._build(run_id)
                self._orchestrators[run_id] = orch
            return orch

    def _peek(self, run_id: int) -> CrawlRunOrchestrator:
        """只读查询用：没有缓存实例时临时构造，不登记"""
        with self._lock:
            orch = self._orchestrators.get(run_id)
        return orch if orch is not None else self._build(run_id)

    def _evict(self, run_id: int) -> None:
        # 只缓存有工作线程的运行；线程内的暂停与取消依赖同一个实例
        with self._lock:
            if run_id not in self._threads:
                self._orchestrators.pop(run_id, None)

    @staticmethod
    def _active_run(db: Session, project_id: int, exclude_id: Optional[int] = None) -> Optional[CrawlRun]:
        query = db.query(CrawlRun).filter(
            CrawlRun.project_id == project_id,
            CrawlRun.status.in_(ACTIVE_STATUSES),
        )
        if exclude_id is not None:
            query = query.filter(CrawlRun.id != exclude_id)
        return query.order_by(CrawlRun.id.asc()).first()

    @staticmethod
    def _load_run(db: Session, run_id: int) -> CrawlRun:
        run = db.get(CrawlRun, run_id)
        if run is None:
            raise LookupError(f"运行 {run_id} 不存在")
        return run

    # ---------- 对外操作 ----------

    def enqueue(self, project_id: int, run_type: str, created_by: Optional[str] = None) -> CrawlRun:
        with self._lock:
            db = self._session_factory()
            try:
                project = db.get(Project, project_id)
                if project is None:
                    raise LookupError(f"项目 {project_id} 不存在")
                active = self._active_run(db, project_id)
                if active is not None:
                    raise SchedulingConflict(project_id, active.id)
                run = CrawlRun(
                    project_id=project_id,
                    run_type=run_type,
                    status=STATUS_QUEUED,
                    config_snapshot=build_config_snapshot(project, run_type),
                    created_by=created_by,
                )
                db.add(run)
                db.commit()
                logger.info("项目 %s 新建抓取运行 %s（%s）", project_id, run.id, run_type)
            finally:
                db.close()
        self.dispatch()
        return run

    def dispatch(self) -> List[int]:
        """按 id 先进先出准入排队中的运行，返回本次启动的运行 id"""
        started: List[int] = []
        with self._lock:
            if self._closed:
                return started
            slots = self.max_concurrent_runs - sum(1 for t in self._threads.values() if t.is_alive())
            if slots <= 0:
                return started
            db = self._session_factory()
            try:
                queued = (
                    db.query(CrawlRun)
                    .filter(CrawlRun.status == STATUS_QUEUED)
                    .order_by(CrawlRun.id.asc())
                    .all()
                )
                busy_projects = {
                    row.project_id
                    for row in db.query(CrawlRun.project_id).filter(CrawlRun.status == STATUS_RUNNING).all()
                }
                for run in queued:
                    if len(started) >= slots:
                        break
                    if run.project_id in busy_projects:
                        continue
                    self.orchestrator(run.id).mark_running(db, run)
                    busy_projects.add(run.project_id)
                    started.append(run.id)
            finally:
                db.close()
            for run_id in started:
                thread = threading.Thread(
                    target=self._work,
                    args=(run_id,),
                    name=f"crawl-run-{run_id}",
                    daemon=True,
                )
                self._threads[run_id] = thread
                thread.start()
        return started

    def _work(self, run_id: int) -> None:
        try:
            self.orchestrator(run_id).execute()
        finally:
            with self._lock:
                # 暂停后立即恢复时，新线程可能已登记在同一 run_id 下
                if self._threads.get(run_id) is threading.current_thread():
                    self._threads.pop(run_id)
                    self._orchestrators.pop(run_id, None)
            self.dispatch()

    def pause(self, run_id: int) -> CrawlRun:
        with self._lock:
            db = self._session_factory()
            try:
                run = self._load_run(db, run_id)
                return self.orchestrator(run_id).request_pause(db, run)
            finally:
                db.close()
                self._evict(run_id)

    def cancel(self, run_id: int) -> CrawlRun:
        """queued/paused 立即取消；running 在当前页面完成后取消"""
        with self._lock:
            db = self._session_factory()
            try:
                run = self._load_run(db, run_id)
                return self.orchestrator(run_id).request_cancel(db, run)
            finally:
                db.close()
                self._evict(run_id)

    def resume(self, run_id: int, token_limit: Optional[int] = None, clear_token_limit: bool = False) -> CrawlRun:
        with self._lock:
            db = self._session_factory()
            try:
                run = self._load_run(db, run_id)
                if run.status != STATUS_PAUSED:
                    raise InvalidTransition(run.id, run.status, STATUS_QUEUED)
                orch = self.orchestrator(run_id)
                active = self._active_run(db, run.project_id, exclude_id=run.id)
                if active is not None:
                    raise SchedulingConflict(run.project_id, active.id)
                run = orch.prepare_resume(db, run, token_limit=token_limit, clear_token_limit=clear_token_limit)
            finally:
                db.close()
                self._evict(run_id)
        self.dispatch()
        return run

    def recover(self) -> int:
        """将遗留的 running 运行重新排队（或按暂停请求转为 paused）"""
        with self._lock:
            db = self._session_factory()
            try:
                orphans = (
                    db.query(CrawlRun)
                    .filter(CrawlRun.status == STATUS_RUNNING)
                    .order_by(CrawlRun.id.asc())
                    .all()
                )
                for run in orphans:
                    if run.id in self._threads:
                        continue
                    self.orchestrator(run.id).requeue_orphan(db, run)
                    self._evict(run.id)
                return len(orphans)
            finally:
                db.close()

    def budget(self, run_id: int) -> dict:
        return self._peek(run_id).budget_stats()

    def is_active(self, run_id: int) -> bool:
        with self._lock:
            thread = self._threads.get(run_id)
        return thread is not None and thread.is_alive()

    def join(self, run_id: int, timeout: Optional[float] = None) -> bool:
        """等待运行线程结束；返回 True 表示已结束"""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        """停止准入新运行；执行中的运行在页面边界停下并重新排队，下次启动时继续"""
        with self._lock:
            self._closed = True
            threads = dict(self._threads)
        for run_id in threads:
            self.orchestrator(run_id).request_stop()
        for thread in threads.values():
            thread.join(timeout)
        logger.info("抓取调度器已停止（%s 个运行被中断）", len(threads))


__all__ = ["RunScheduler", "build_config_snapshot", "default_collaborators"]

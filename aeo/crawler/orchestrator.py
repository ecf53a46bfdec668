"""
单个抓取运行的编排器

状态机：queued -> running -> {paused, completed, failed}；paused -> queued -> running。
所有迁移统一经过 RUN_TRANSITIONS 校验，其余请求抛出 InvalidTransition。

- 暂停是协作式的：只在页面边界检查（内存 Event + 持久化 pause_requested），
  不会打断正在处理的页面
- 取消：queued/paused 立即进入 failed；running 与暂停一样在页面边界生效
  （cancel_requested），error_message 为 RUN_CANCELLED_MESSAGE
- 每个页面的结果、队列条目状态与运行计数在同一事务中提交
- 运行计数只由本编排器写入；snapshot() 返回最近一次提交后的一致快照
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..constants import (
    ENTRY_UNCHANGED,
    RUN_CANCELLED_MESSAGE,
    RUN_TRANSITIONS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAUSED,
    STATUS_QUEUED,
    STATUS_RUNNING,
)
from ..models import CrawlFrontierEntry, CrawlRun, PageSnapshot, Project
from ..schemas import CrawlConfig
from ..utils.time_utils import elapsed_seconds, now
from .cache import ContentCache
from .collaborators import CrawlCollaborators, Fetcher
from .errors import BudgetExceeded, InvalidTransition, PersistenceFailure
from .frontier import Frontier
from .ledger import EncoderRegistry, TokenBudgetLedger
from .processor import OUTCOME_BUDGET_DENIED, PageOutcome, PageProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSnapshot:
    run_id: int
    status: str
    pages_discovered: int
    pages_processed: int
    token_usage: int
    token_limit: Optional[int]
    pause_requested: bool
    cancel_requested: bool
    error_message: Optional[str]


def check_transition(run: CrawlRun, target: str) -> None:
    if target not in RUN_TRANSITIONS.get(run.status, frozenset()):
        raise InvalidTransition(run.id, run.status, target)


def _token_limit_of(run: CrawlRun) -> Optional[int]:
    limit = (run.config_snapshot or {}).get("token_limit")
    try:
        limit = int(limit) if limit is not None else None
    except (TypeError, ValueError):
        return None
    return limit if limit and limit > 0 else None


class CrawlRunOrchestrator:
    def __init__(
        self,
        run_id: int,
        session_factory: Callable[[], Session],
        collaborators_factory: Callable[[CrawlConfig], CrawlCollaborators],
        *,
        encoder_registry: Optional[EncoderRegistry] = None,
        cache: Optional[ContentCache] = None,
        crawl_delay_ms: Optional[int] = None,
    ):
        self.run_id = run_id
        self._session_factory = session_factory
        self._collaborators_factory = collaborators_factory
        self._encoders = encoder_registry or EncoderRegistry()
        self._cache = cache or ContentCache()
        self._delay = max(0, crawl_delay_ms if crawl_delay_ms is not None else settings.CRAWL_DELAY_MS) / 1000
        self._pause_event = threading.Event()
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._snapshot: Optional[RunSnapshot] = None
        self._ledger: Optional[TokenBudgetLedger] = None

    # ---------- 快照 ----------

    def _capture(self, run: CrawlRun, *, counters: bool = True) -> RunSnapshot:
        """counters=False：调用方的 run 来自其他会话，计数保留执行线程最近一次提交的值"""
        with self._lock:
            previous = self._snapshot
            if counters or previous is None:
                discovered = run.pages_discovered or 0
                processed = run.pages_processed or 0
                usage = run.token_usage or 0
            else:
                discovered = previous.pages_discovered
                processed = previous.pages_processed
                usage = previous.token_usage
            snap = RunSnapshot(
                run_id=run.id,
                status=run.status,
                pages_discovered=discovered,
                pages_processed=processed,
                token_usage=usage,
                token_limit=_token_limit_of(run),
                pause_requested=bool(run.pause_requested),
                cancel_requested=bool(run.cancel_requested),
                error_message=run.error_message,
            )
            self._snapshot = snap
        return snap

    def snapshot(self) -> RunSnapshot:
        """运行状态的一致快照（计数不会被读到一半）"""
        with self._lock:
            snap = self._snapshot
        if snap is not None:
            return snap
        db = self._session_factory()
        try:
            run = db.get(CrawlRun, self.run_id)
            if run is None:
                raise LookupError(f"运行 {self.run_id} 不存在")
            return self._capture(run)
        finally:
            db.close()

    def budget_stats(self) -> dict:
        with self._lock:
            ledger = self._ledger
        if ledger is not None:
            return ledger.stats()
        snap = self.snapshot()
        return TokenBudgetLedger(snap.token_limit, snap.token_usage, model_name=settings.TOKEN_MODEL).stats()

    # ---------- 状态迁移（由调度器在其锁内调用） ----------

    @staticmethod
    def _clear_pause_flag(db: Session, run: CrawlRun) -> None:
        # 标记可能由其他会话写入，先失效本地值再覆盖
        db.expire(run, ["pause_requested"])
        run.pause_requested = False

    def _commit(self, db: Session, run: CrawlRun, *, counters: bool = True) -> CrawlRun:
        with self._lock:
            db.commit()
        self._capture(run, counters=counters)
        return run

    def mark_running(self, db: Session, run: CrawlRun) -> CrawlRun:
        check_transition(run, STATUS_RUNNING)
        run.status = STATUS_RUNNING
        if run.started_at is None:
            run.started_at = now()
        self._pause_event.clear()
        logger.info("抓取运行 %s 开始执行（项目 %s，%s）", run.id, run.project_id, run.run_type)
        return self._commit(db, run)

    def request_pause(self, db: Session, run: CrawlRun) -> CrawlRun:
        """queued 直接进入 paused；running 在下一个页面边界生效"""
        if run.status == STATUS_QUEUED:
            check_transition(run, STATUS_PAUSED)
            run.status = STATUS_PAUSED
            logger.info("抓取运行 %s 在排队中被暂停", run.id)
            return self._commit(db, run)
        if run.status == STATUS_RUNNING:
            run.pause_requested = True
            self._pause_event.set()
            logger.info("抓取运行 %s 已请求暂停，将在当前页面完成后生效", run.id)
            return self._commit(db, run, counters=False)
        raise InvalidTransition(run.id, run.status, STATUS_PAUSED)

    def request_cancel(self, db: Session, run: CrawlRun) -> CrawlRun:
        """queued/paused 立即终止为 failed；running 在下一个页面边界终止"""
        if run.status in (STATUS_QUEUED, STATUS_PAUSED):
            run.cancel_requested = True
            self._enter_cancelled(db, run)
            return run
        if run.status == STATUS_RUNNING:
            run.cancel_requested = True
            self._cancel_event.set()
            # 同时唤醒页面间隔等待
            self._pause_event.set()
            logger.info("抓取运行 %s 已请求取消，将在当前页面完成后生效", run.id)
            return self._commit(db, run, counters=False)
        raise InvalidTransition(run.id, run.status, STATUS_FAILED)

    def prepare_resume(
        self,
        db: Session,
        run: CrawlRun,
        token_limit: Optional[int] = None,
        clear_token_limit: bool = False,
    ) -> CrawlRun:
        """paused -> queued；可同时调整 token 上限（仅暂停期间允许）"""
        if run.status != STATUS_PAUSED:
            raise InvalidTransition(run.id, run.status, STATUS_QUEUED)
        check_transition(run, STATUS_QUEUED)
        if clear_token_limit or token_limit is not None:
            snap = dict(run.config_snapshot or {})
            snap["token_limit"] = None if clear_token_limit else int(token_limit)
            run.config_snapshot = snap
        run.status = STATUS_QUEUED
        self._clear_pause_flag(db, run)
        run.error_message = None
        self._pause_event.clear()
        logger.info("抓取运行 %s 已恢复排队（token 上限：%s）", run.id, _token_limit_of(run))
        return self._commit(db, run, counters=False)

    def request_stop(self) -> None:
        """进程退出前调用：在页面边界停下并重新排队"""
        self._stop_event.set()
        self._pause_event.set()

    def requeue_orphan(self, db: Session, run: CrawlRun) -> CrawlRun:
        """服务重启时回收遗留的 running 运行"""
        if run.cancel_requested:
            self._enter_cancelled(db, run)
            return run
        if run.pause_requested:
            check_transition(run, STATUS_PAUSED)
            run.status = STATUS_PAUSED
            self._clear_pause_flag(db, run)
        else:
            check_transition(run, STATUS_QUEUED)
            run.status = STATUS_QUEUED
        logger.warning("回收遗留运行 %s -> %s", run.id, run.status)
        return self._commit(db, run)

    def _enter_paused(self, db: Session, run: CrawlRun, reason: Optional[str] = None, pending: int = 0) -> None:
        if self._cancel_wanted(db):
            self._enter_cancelled(db, run)
            return
        check_transition(run, STATUS_PAUSED)
        run.status = STATUS_PAUSED
        self._clear_pause_flag(db, run)
        run.error_message = reason
        self._commit(db, run)
        self._pause_event.clear()
        logger.info(
            "抓取运行 %s 已暂停：已处理 %s 页，待处理 %s 页，token %s%s",
            run.id,
            run.pages_processed,
            pending,
            run.token_usage,
            f"（{reason}）" if reason else "",
        )

    def _enter_completed(self, db: Session, run: CrawlRun) -> None:
        check_transition(run, STATUS_COMPLETED)
        run.status = STATUS_COMPLETED
        self._clear_pause_flag(db, run)
        run.completed_at = now()
        self._commit(db, run)
        logger.info(
            "抓取运行 %s 完成：发现 %s 页，处理 %s 页，token %s，耗时 %.1fs",
            run.id,
            run.pages_discovered,
            run.pages_processed,
            run.token_usage,
            elapsed_seconds(run.started_at, run.completed_at) or 0.0,
        )

    def _enter_failed(self, db: Session, run: CrawlRun, message: str) -> None:
        check_transition(run, STATUS_FAILED)
        run.status = STATUS_FAILED
        self._clear_pause_flag(db, run)
        run.error_message = message or "未知错误"
        run.completed_at = now()
        self._commit(db, run)
        logger.error("抓取运行 %s 失败：%s", run.id, run.error_message)

    def _enter_cancelled(self, db: Session, run: CrawlRun) -> None:
        check_transition(run, STATUS_FAILED)
        run.status = STATUS_FAILED
        self._clear_pause_flag(db, run)
        run.error_message = RUN_CANCELLED_MESSAGE
        run.completed_at = now()
        self._commit(db, run)
        self._pause_event.clear()
        logger.info("抓取运行 %s 已取消：已处理 %s 页", run.id, run.pages_processed)

    def _fail_in_new_session(self, message: str) -> None:
        db = self._session_factory()
        try:
            run = db.get(CrawlRun, self.run_id)
            if run is not None and run.status not in (STATUS_COMPLETED, STATUS_FAILED):
                self._enter_failed(db, run, message)
        except SQLAlchemyError:
            logger.exception("无法将运行 %s 标记为失败", self.run_id)
            db.rollback()
        finally:
            db.close()

    # ---------- 执行 ----------

    def _pause_wanted(self, db: Session) -> bool:
        if self._pause_event.is_set():
            return True
        flag = db.query(CrawlRun.pause_requested).filter(CrawlRun.id == self.run_id).scalar()
        return bool(flag)

    def _cancel_wanted(self, db: Session) -> bool:
        if self._cancel_event.is_set():
            return True
        flag = db.query(CrawlRun.cancel_requested).filter(CrawlRun.id == self.run_id).scalar()
        return bool(flag)

    def execute(self) -> None:
        """在工作线程中执行，直到暂停、完成或失败"""
        db = self._session_factory()
        try:
            run = db.get(CrawlRun, self.run_id)
            if run is None:
                logger.warning("抓取运行 %s 不存在，忽略", self.run_id)
                return
            if run.status != STATUS_RUNNING:
                logger.warning("抓取运行 %s 状态为 %s，不执行", run.id, run.status)
                return
            self._capture(run)
            try:
                config = CrawlConfig.model_validate(run.config_snapshot or {})
            except ValidationError as exc:
                first = exc.errors()[0] if exc.errors() else {}
                field = ".".join(str(part) for part in first.get("loc", ()))
                self._enter_failed(db, run, f"运行配置无效：{field} {first.get('msg', '')}".strip())
                return
            self._run(db, run, config)
        except PersistenceFailure as exc:
            logger.exception("抓取运行 %s 持久化失败", self.run_id)
            db.rollback()
            self._fail_in_new_session(f"持久化失败：{exc}")
        except SQLAlchemyError as exc:
            logger.exception("抓取运行 %s 存储错误", self.run_id)
            db.rollback()
            self._fail_in_new_session(f"存储错误：{exc.__class__.__name__}: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("抓取运行 %s 执行异常", self.run_id)
            db.rollback()
            self._fail_in_new_session(f"执行异常：{exc.__class__.__name__}: {exc}")
        finally:
            db.close()

    def _run(self, db: Session, run: CrawlRun, config: CrawlConfig) -> None:
        project = db.get(Project, run.project_id)
        collaborators = self._collaborators_factory(config)
        frontier = Frontier(run.id, run.project_id, config, collaborators.fetcher, collaborators.sitemaps)
        if not frontier.restore(db, run.pages_processed):
            report = frontier.seed(db, project)
            run.pages_discovered = (run.pages_discovered or 0) + report.admitted
            self._commit(db, run)
            if report.admitted == 0 and report.target_blocked:
                self._enter_failed(db, run, f"目标地址被 robots.txt 禁止抓取：{config.base_url}")
                return

        ledger = TokenBudgetLedger(
            config.token_limit,
            run.token_usage or 0,
            encoder=self._encoders.get(settings.TOKEN_MODEL),
            model_name=settings.TOKEN_MODEL,
            prompt_overhead=settings.SCORING_PROMPT_OVERHEAD,
            max_completion_tokens=settings.SCORING_MAX_COMPLETION_TOKENS,
        )
        with self._lock:
            self._ledger = ledger
        processor = PageProcessor(
            run_id=run.id,
            project_id=run.project_id,
            rubric_version=config.rubric_version,
            fetcher=collaborators.fetcher,
            scorer=collaborators.scorer,
            ledger=ledger,
            cache=self._cache,
            max_content_chars=settings.SCORING_MAX_CONTENT_CHARS,
        )
        try:
            self._loop(db, run, frontier, processor, ledger, collaborators.fetcher)
        finally:
            with self._lock:
                # 暂停后立即恢复时，新一轮执行可能已装入自己的账本
                if self._ledger is ledger:
                    self._ledger = None

    def _loop(
        self,
        db: Session,
        run: CrawlRun,
        frontier: Frontier,
        processor: PageProcessor,
        ledger: TokenBudgetLedger,
        fetcher: Fetcher,
    ) -> None:
        while True:
            if self._cancel_wanted(db):
                self._enter_cancelled(db, run)
                return
            if self._stop_event.is_set():
                check_transition(run, STATUS_QUEUED)
                run.status = STATUS_QUEUED
                self._commit(db, run)
                logger.info("抓取运行 %s 因服务停止重新排队", run.id)
                return
            if self._pause_wanted(db):
                self._enter_paused(db, run, pending=frontier.pending_count(db))
                return
            item = frontier.next(db)
            # delta 模式下跳过的条目在此落库
            self._commit(db, run)
            if item is None:
                break
            outcome = processor.evaluate(db, item)
            if outcome.status == OUTCOME_BUDGET_DENIED:
                denial = BudgetExceeded(outcome.reservation.tokens, ledger.used, ledger.token_limit or 0)
                self._enter_paused(db, run, str(denial), pending=frontier.pending_count(db))
                return
            self._record(db, run, frontier, processor, outcome, ledger)
            delay = self._page_delay(fetcher, item.url)
            if delay:
                self._pause_event.wait(delay)

        self._finish(db, run)

    def _page_delay(self, fetcher: Fetcher, url: str) -> float:
        """页面间隔取配置值与 robots.txt Crawl-delay 中较大者（秒）"""
        robots_delay = fetcher.crawl_delay(url)
        return max(self._delay, float(robots_delay or 0))

    def _record(
        self,
        db: Session,
        run: CrawlRun,
        frontier: Frontier,
        processor: PageProcessor,
        outcome: PageOutcome,
        ledger: TokenBudgetLedger,
    ) -> None:
        """单页结果、队列状态、运行计数同一事务提交；唯一键冲突时回滚重试一次"""
        for attempt in (1, 2):
            try:
                processor.persist(db, outcome)
                frontier.mark_processed(db, outcome.item)
                discovered = frontier.discover(db, outcome.item, outcome.links)
                run.pages_processed = (run.pages_processed or 0) + 1
                run.pages_discovered = (run.pages_discovered or 0) + discovered
                run.token_usage = ledger.used
                self._commit(db, run)
                return
            except IntegrityError as exc:
                db.rollback()
                if attempt == 2:
                    raise PersistenceFailure(f"写入页面 {outcome.item.url} 失败：{exc.orig}") from exc
                logger.warning("写入页面 %s 时发生唯一键冲突，重试", outcome.item.url)
                frontier.restore(db, run.pages_processed)

    def _finish(self, db: Session, run: CrawlRun) -> None:
        if run.pages_processed:
            # delta 模式中内容未变化的条目同样算作抓取成功
            captured = db.query(PageSnapshot.id).filter(PageSnapshot.crawl_run_id == run.id).first()
            unchanged = (
                db.query(CrawlFrontierEntry.id)
                .filter(CrawlFrontierEntry.crawl_run_id == run.id, CrawlFrontierEntry.state == ENTRY_UNCHANGED)
                .first()
            )
            if captured is None and unchanged is None:
                self._enter_failed(db, run, f"全部 {run.pages_processed} 个页面均抓取失败")
                return
        self._enter_completed(db, run)


__all__ = ["CrawlRunOrchestrator", "RunSnapshot", "check_transition"]

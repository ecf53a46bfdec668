"""
单页处理：抓取 -> 指纹 -> 缓存 -> 预算 -> 评分 -> 落库

分两步：
- evaluate：网络与 AI 调用、账本记账，只读数据库
- persist：写入 Page / PageSnapshot / PageScore，不提交事务

编排器把 persist、队列条目状态与运行计数放进同一个事务，
因此一个页面不会出现“有评分无快照”的半完成状态。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models import Page, PageScore, PageSnapshot
from ..utils.time_utils import now
from .cache import ContentCache
from .collaborators import FetchResult, Fetcher, ScoreResult, Scorer, guarded_fetch
from .frontier import FrontierItem
from .ledger import Reservation, TokenBudgetLedger
from .urls import content_hash, detect_page_type, normalize_content

logger = logging.getLogger(__name__)

OUTCOME_SCORED = "scored"
OUTCOME_CACHED = "cached"
OUTCOME_FETCH_FAILED = "fetch_failed"
OUTCOME_EMPTY = "empty"
OUTCOME_SCORE_FAILED = "score_failed"
OUTCOME_BUDGET_DENIED = "budget_denied"


@dataclass
class PageOutcome:
    status: str
    item: FrontierItem
    fetch: Optional[FetchResult] = None
    content_hash: Optional[str] = None
    cached_score: Optional[PageScore] = None
    score: Optional[ScoreResult] = None
    reservation: Optional[Reservation] = None
    tokens_used: int = 0
    error: Optional[str] = None
    links: List[str] = field(default_factory=list)

    @property
    def counts_as_processed(self) -> bool:
        return self.status != OUTCOME_BUDGET_DENIED


class PageProcessor:
    def __init__(
        self,
        *,
        run_id: int,
        project_id: int,
        rubric_version: str,
        fetcher: Fetcher,
        scorer: Scorer,
        ledger: TokenBudgetLedger,
        cache: Optional[ContentCache] = None,
        max_content_chars: Optional[int] = None,
    ):
        self.run_id = run_id
        self.project_id = project_id
        self.rubric_version = rubric_version
        self.fetcher = fetcher
        self.scorer = scorer
        self.ledger = ledger
        self.cache = cache or ContentCache()
        self.max_content_chars = max_content_chars

    def _fetch(self, item: FrontierItem) -> FetchResult:
        if item.prefetched is not None:
            return item.prefetched
        return guarded_fetch(self.fetcher, item.url)

    def evaluate(self, db: Session, item: FrontierItem) -> PageOutcome:
        result = self._fetch(item)
        if not result.ok:
            logger.warning("页面抓取失败 %s：%s", item.url, result.error)
            return PageOutcome(OUTCOME_FETCH_FAILED, item, fetch=result, error=result.error)

        outcome = PageOutcome(OUTCOME_EMPTY, item, fetch=result, links=list(result.links))
        text = normalize_content(result.content)
        outcome.content_hash = content_hash(result.content)
        if not text:
            outcome.error = "页面无可评分正文"
            return outcome

        cached = self.cache.lookup(db, outcome.content_hash, self.rubric_version)
        if cached is not None:
            logger.debug("命中评分缓存：%s", item.url)
            outcome.status = OUTCOME_CACHED
            outcome.cached_score = cached
            return outcome

        if self.max_content_chars and len(text) > self.max_content_chars:
            text = text[: self.max_content_chars]
        reservation = self.ledger.reserve(self.ledger.estimate(text))
        if not reservation:
            logger.warning(
                "token 预算不足，暂停于 %s（预估 %s，剩余 %s）",
                item.url,
                reservation.tokens,
                reservation.remaining,
            )
            outcome.status = OUTCOME_BUDGET_DENIED
            outcome.reservation = reservation
            return outcome

        try:
            score = self.scorer.score(text, self.rubric_version)
        except Exception as exc:  # noqa: BLE001
            self.ledger.release(reservation)
            logger.warning("页面评分失败 %s：%s", item.url, exc)
            outcome.status = OUTCOME_SCORE_FAILED
            outcome.error = f"评分失败：{exc}"
            return outcome

        self.ledger.commit(score.tokens_used, reservation)
        outcome.status = OUTCOME_SCORED
        outcome.score = score
        outcome.reservation = reservation
        outcome.tokens_used = int(score.tokens_used)
        return outcome

    def _upsert_page(self, db: Session, item: FrontierItem) -> Page:
        page = (
            db.query(Page)
            .filter(Page.project_id == self.project_id, Page.url_hash == item.url_hash)
            .first()
        )
        if page is None:
            page = Page(
                project_id=self.project_id,
                url=item.url,
                url_hash=item.url_hash,
                page_type=detect_page_type(item.url),
            )
            db.add(page)
        page.last_crawled_at = now()
        page.last_crawl_run_id = self.run_id
        return page

    def persist(self, db: Session, outcome: PageOutcome) -> Optional[Page]:
        """写入单页结果（不提交）；预算拒绝时不写任何数据"""
        if not outcome.counts_as_processed:
            return None
        page = self._upsert_page(db, outcome.item)
        page.last_error = outcome.error
        if outcome.status == OUTCOME_FETCH_FAILED:
            db.flush()
            return page

        score_row: Optional[PageScore] = None
        if outcome.status == OUTCOME_CACHED:
            score_row = outcome.cached_score
        elif outcome.status == OUTCOME_SCORED:
            score_row = self.cache.store(db, outcome.content_hash, self.rubric_version, outcome.score)

        result = outcome.fetch
        snapshot = PageSnapshot(
            page=page,
            crawl_run_id=self.run_id,
            content_hash=outcome.content_hash,
            status_code=result.status_code if result else None,
            word_count=len((result.content if result else "").split()),
            link_count=len(outcome.links),
            content_length=len(result.content if result else ""),
            from_cache=outcome.status == OUTCOME_CACHED,
            score=score_row,
        )
        db.add(snapshot)
        db.flush()
        return page


__all__ = [
    "PageOutcome",
    "PageProcessor",
    "OUTCOME_SCORED",
    "OUTCOME_CACHED",
    "OUTCOME_FETCH_FAILED",
    "OUTCOME_EMPTY",
    "OUTCOME_SCORE_FAILED",
    "OUTCOME_BUDGET_DENIED",
]

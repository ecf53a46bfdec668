"""
待抓取队列（Frontier）

按运行类型生成有序、去重的 URL 序列：
- full：目标 URL + sitemap 作为种子，广度优先跟随站内链接直到 depth_limit
- sitemap_only：仅 sitemap 条目，不跟随链接
- sample：同 full，但入队总数以 sample_size 封顶
- delta：以项目已知页面为种子，仅产出内容指纹发生变化的页面

队列条目持久化在 crawl_frontier_entries 表，按 seq 顺序处理；
暂停后恢复时直接从持久化位置继续，不重新推导整个队列。
本模块只修改队列条目，运行计数由编排器写入。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..constants import (
    ENTRY_PENDING,
    ENTRY_PROCESSED,
    ENTRY_UNCHANGED,
    RUN_TYPE_DELTA,
    RUN_TYPE_FULL,
    RUN_TYPE_SAMPLE,
    RUN_TYPE_SITEMAP_ONLY,
)
from ..models import CrawlFrontierEntry, Page, PageSnapshot, Project
from ..schemas import CrawlConfig
from .collaborators import FetchResult, Fetcher, SitemapSource, guarded_fetch
from .errors import PersistenceFailure
from .urls import content_hash, is_excluded, is_same_site, normalize_url, url_hash

logger = logging.getLogger(__name__)


@dataclass
class FrontierItem:
    entry_id: int
    seq: int
    url: str
    url_hash: str
    depth: int
    # delta 模式下比对指纹时已抓取的结果，避免重复抓取
    prefetched: Optional[FetchResult] = None


@dataclass
class SeedReport:
    admitted: int = 0
    target_blocked: bool = False


class Frontier:
    def __init__(
        self,
        run_id: int,
        project_id: int,
        config: CrawlConfig,
        fetcher: Fetcher,
        sitemaps: SitemapSource,
    ):
        self.run_id = run_id
        self.project_id = project_id
        self.config = config
        self.fetcher = fetcher
        self.sitemaps = sitemaps
        self._hashes: set[str] = set()
        self._next_seq = 0
        self._loaded = False

    # ---------- 状态恢复 ----------

    def _entries(self, db: Session):
        return db.query(CrawlFrontierEntry).filter(CrawlFrontierEntry.crawl_run_id == self.run_id)

    def restore(self, db: Session, pages_processed: int) -> bool:
        """加载持久化队列；返回 True 表示此前已完成播种。

        已处理条目数必须与运行记录的 pages_processed 一致，否则视为持久化损坏。
        """
        rows = self._entries(db).with_entities(CrawlFrontierEntry.url_hash, CrawlFrontierEntry.seq).all()
        self._hashes = {row.url_hash for row in rows}
        self._next_seq = (max(row.seq for row in rows) + 1) if rows else 0
        self._loaded = True
        processed = self._entries(db).filter(CrawlFrontierEntry.state == ENTRY_PROCESSED).count()
        if processed != pages_processed:
            raise PersistenceFailure(
                f"队列状态与运行计数不一致：已处理条目 {processed}，pages_processed={pages_processed}"
            )
        return bool(rows)

    @property
    def size(self) -> int:
        return len(self._hashes)

    # ---------- 入队 ----------

    def _at_capacity(self) -> bool:
        return self.config.run_type == RUN_TYPE_SAMPLE and self.config.sample_size is not None and self.size >= self.config.sample_size

    def admit(self, db: Session, url: str, depth: int, *, check_robots: bool = True) -> Optional[CrawlFrontierEntry]:
        """过滤、规范化、去重后入队；不满足条件返回 None"""
        if self._at_capacity():
            return None
        normalized = normalize_url(url)
        if not normalized:
            return None
        if is_excluded(normalized, self.config.excluded_url_patterns):
            return None
        digest = url_hash(normalized)
        if digest in self._hashes:
            return None
        if check_robots and not self.fetcher.is_allowed(normalized):
            logger.info("robots.txt 不允许抓取：%s", normalized)
            return None
        entry = CrawlFrontierEntry(
            crawl_run_id=self.run_id,
            seq=self._next_seq,
            url=normalized,
            url_hash=digest,
            depth=depth,
            state=ENTRY_PENDING,
        )
        db.add(entry)
        self._hashes.add(digest)
        self._next_seq += 1
        return entry

    def _admit_many(self, db: Session, urls: Iterable[str], depth: int) -> int:
        admitted = 0
        for candidate in urls:
            if self._at_capacity():
                break
            if self.admit(db, candidate, depth) is not None:
                admitted += 1
        return admitted

    def _sitemap_urls(self, project: Project, *, required: bool) -> list[str]:
        try:
            return list(self.sitemaps.discover_sitemap_urls(project))
        except Exception as exc:  # noqa: BLE001
            if required:
                raise
            logger.warning("sitemap 解析失败，仅从目标地址开始抓取：%s", exc)
            return []

    def seed(self, db: Session, project: Project) -> SeedReport:
        """首次执行时生成种子条目（由调用方提交事务）"""
        report = SeedReport()
        run_type = self.config.run_type
        if run_type == RUN_TYPE_DELTA:
            known = (
                db.query(Page.url)
                .filter(Page.project_id == self.project_id)
                .order_by(Page.id.asc())
                .all()
            )
            report.admitted = self._admit_many(db, (row.url for row in known), 0)
        elif run_type == RUN_TYPE_SITEMAP_ONLY:
            report.admitted = self._admit_many(db, self._sitemap_urls(project, required=True), 0)
        else:
            base = self.config.base_url
            if self.admit(db, base, 0) is not None:
                report.admitted += 1
            elif not self.fetcher.is_allowed(normalize_url(base) or base):
                report.target_blocked = True
            report.admitted += self._admit_many(db, self._sitemap_urls(project, required=False), 0)
        logger.info("运行 %s 播种完成（%s）：%s 个 URL", self.run_id, run_type, report.admitted)
        return report

    def discover(self, db: Session, item: FrontierItem, links: Iterable[str]) -> int:
        """从已处理页面的链接中发现新 URL（仅 full / sample）"""
        if self.config.run_type not in (RUN_TYPE_FULL, RUN_TYPE_SAMPLE):
            return 0
        if item.depth >= self.config.depth_limit:
            return 0
        base = self.config.base_url
        same_site = (link for link in links if is_same_site(link, base))
        return self._admit_many(db, same_site, item.depth + 1)

    # ---------- 出队 ----------

    def _latest_hash(self, db: Session, digest: str) -> Optional[str]:
        row = (
            db.query(PageSnapshot.content_hash)
            .join(Page, Page.id == PageSnapshot.page_id)
            .filter(Page.project_id == self.project_id, Page.url_hash == digest)
            .order_by(PageSnapshot.id.desc())
            .first()
        )
        return row.content_hash if row else None

    def next(self, db: Session) -> Optional[FrontierItem]:
        """返回下一个待处理条目；队列耗尽时返回 None。

        delta 模式下内容未变化的条目标记为 unchanged 并跳过（由调用方提交事务）。
        """
        while True:
            entry = (
                self._entries(db)
                .filter(CrawlFrontierEntry.state == ENTRY_PENDING)
                .order_by(CrawlFrontierEntry.seq.asc())
                .first()
            )
            if entry is None:
                return None
            item = FrontierItem(
                entry_id=entry.id,
                seq=entry.seq,
                url=entry.url,
                url_hash=entry.url_hash,
                depth=entry.depth,
            )
            if self.config.run_type != RUN_TYPE_DELTA:
                return item
            result = guarded_fetch(self.fetcher, entry.url)
            item.prefetched = result
            if not result.ok:
                return item
            previous = self._latest_hash(db, entry.url_hash)
            if previous is not None and previous == content_hash(result.content):
                entry.state = ENTRY_UNCHANGED
                db.flush()
                logger.debug("内容未变化，跳过：%s", entry.url)
                continue
            return item

    def mark_processed(self, db: Session, item: FrontierItem) -> None:
        entry = db.get(CrawlFrontierEntry, item.entry_id)
        if entry is None or entry.state != ENTRY_PENDING:
            raise PersistenceFailure(f"队列条目 {item.entry_id} 状态异常")
        entry.state = ENTRY_PROCESSED

    def pending_count(self, db: Session) -> int:
        return (
            self._entries(db)
            .filter(CrawlFrontierEntry.state == ENTRY_PENDING)
            .with_entities(func.count(CrawlFrontierEntry.id))
            .scalar()
            or 0
        )


__all__ = ["Frontier", "FrontierItem", "SeedReport"]

"""
ORM 模型定义
- 组织、项目
- 抓取运行、待抓取队列
- 页面、页面快照、AI 评分（兼作内容缓存）
- 操作审计
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.ext.mutable import MutableDict, MutableList

from .constants import ENTRY_PENDING, STATUS_QUEUED
from .database import Base
from .utils.time_utils import now


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    slug: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now)

    projects: Mapped[List["Project"]] = relationship("Project", back_populates="organization", cascade="all, delete-orphan")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    target_url: Mapped[str] = mapped_column(String(2048))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # 抓取配置：启动运行时整体复制到 CrawlRun.config_snapshot
    depth_limit: Mapped[int] = mapped_column(Integer, default=3)
    sample_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    token_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 为空或 0 表示不限
    excluded_url_patterns: Mapped[list[str]] = mapped_column(MutableList.as_mutable(JSON), default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now, onupdate=now)

    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), index=True)
    organization: Mapped[Organization] = relationship("Organization", back_populates="projects")

    crawl_runs: Mapped[List["CrawlRun"]] = relationship("CrawlRun", back_populates="project", cascade="all, delete-orphan")
    pages: Mapped[List["Page"]] = relationship("Page", back_populates="project", cascade="all, delete-orphan")


class CrawlRun(Base):
    __tablename__ = "crawl_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_type: Mapped[str] = mapped_column(String(16))  # full/sitemap_only/sample/delta
    status: Mapped[str] = mapped_column(String(16), default=STATUS_QUEUED, index=True)  # queued/running/paused/completed/failed
    # 启动时的项目配置副本，运行期间不随项目编辑变化
    config_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    pages_discovered: Mapped[int] = mapped_column(Integer, default=0)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0)
    token_usage: Mapped[int] = mapped_column(Integer, default=0)
    pause_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    # 执行中的运行被取消时置位，工作线程在页面边界终止运行
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now, onupdate=now)

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), index=True)
    project: Mapped[Project] = relationship("Project", back_populates="crawl_runs")

    frontier_entries: Mapped[List["CrawlFrontierEntry"]] = relationship(
        "CrawlFrontierEntry",
        back_populates="crawl_run",
        cascade="all, delete-orphan",
        order_by="CrawlFrontierEntry.seq",
    )
    snapshots: Mapped[List["PageSnapshot"]] = relationship("PageSnapshot", back_populates="crawl_run")


class CrawlFrontierEntry(Base):
    __tablename__ = "crawl_frontier_entries"
    __table_args__ = (
        UniqueConstraint("crawl_run_id", "seq", name="uq_frontier_run_seq"),
        UniqueConstraint("crawl_run_id", "url_hash", name="uq_frontier_run_url_hash"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    seq: Mapped[int] = mapped_column(Integer)  # 入队顺序，决定处理顺序
    url: Mapped[str] = mapped_column(Text)
    url_hash: Mapped[str] = mapped_column(String(64))
    depth: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[str] = mapped_column(String(16), default=ENTRY_PENDING)  # pending/processed/unchanged
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now)

    crawl_run_id: Mapped[int] = mapped_column(ForeignKey("crawl_runs.id"), index=True)
    crawl_run: Mapped[CrawlRun] = relationship("CrawlRun", back_populates="frontier_entries")


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("project_id", "url_hash", name="uq_pages_project_url_hash"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text)
    url_hash: Mapped[str] = mapped_column(String(64), index=True)
    page_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    first_discovered_at: Mapped[datetime] = mapped_column(DateTime, default=now)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # 最近一次抓取失败的原因；成功抓取后清空
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), index=True)
    project: Mapped[Project] = relationship("Project", back_populates="pages")

    # 反向引用，不代表归属
    last_crawl_run_id: Mapped[Optional[int]] = mapped_column(ForeignKey("crawl_runs.id"), nullable=True)
    last_crawl_run: Mapped[Optional[CrawlRun]] = relationship("CrawlRun")

    snapshots: Mapped[List["PageSnapshot"]] = relationship(
        "PageSnapshot",
        back_populates="page",
        cascade="all, delete-orphan",
        order_by="PageSnapshot.id",
    )


class PageScore(Base):
    __tablename__ = "page_scores"
    __table_args__ = (UniqueConstraint("ai_cache_key", "rubric_version", name="uq_page_scores_cache_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # 产生该评分的 content_hash
    ai_cache_key: Mapped[str] = mapped_column(String(64), index=True)
    rubric_version: Mapped[str] = mapped_column(String(32))
    overall_score: Mapped[int] = mapped_column(Integer, default=0)
    criteria_scores: Mapped[dict] = mapped_column(JSON, default=dict)
    recommendations: Mapped[list] = mapped_column(JSON, default=list)
    ai_tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    model: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now)

    snapshots: Mapped[List["PageSnapshot"]] = relationship("PageSnapshot", back_populates="score")


class PageSnapshot(Base):
    __tablename__ = "page_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(64), index=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    link_count: Mapped[int] = mapped_column(Integer, default=0)
    content_length: Mapped[int] = mapped_column(Integer, default=0)
    # 命中缓存时直接引用既有评分
    from_cache: Mapped[bool] = mapped_column(Boolean, default=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=now)

    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id"), index=True)
    page: Mapped[Page] = relationship("Page", back_populates="snapshots")

    crawl_run_id: Mapped[int] = mapped_column(ForeignKey("crawl_runs.id"), index=True)
    crawl_run: Mapped[CrawlRun] = relationship("CrawlRun", back_populates="snapshots")

    page_score_id: Mapped[Optional[int]] = mapped_column(ForeignKey("page_scores.id"), nullable=True)
    score: Mapped[Optional[PageScore]] = relationship("PageScore", back_populates="snapshots")


class OperationAuditLog(Base):
    __tablename__ = "operation_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String(64))
    target_type: Mapped[str] = mapped_column(String(32))
    target_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    target_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    before: Mapped[Optional[dict]] = mapped_column(MutableDict.as_mutable(JSON), nullable=True)
    after: Mapped[Optional[dict]] = mapped_column(MutableDict.as_mutable(JSON), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    actor_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now, index=True)

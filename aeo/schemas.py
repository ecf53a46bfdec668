"""
Pydantic 模型定义（请求/响应、运行配置快照）
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

RunType = Literal["full", "sitemap_only", "sample", "delta"]
RunStatus = Literal["queued", "running", "paused", "completed", "failed"]


class CamelModel(BaseModel):
    """对外接口统一使用 camelCase 字段名，同时接受 snake_case 输入"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class CrawlConfig(BaseModel):
    """运行启动时的项目配置副本（存于 CrawlRun.config_snapshot）"""

    base_url: str = Field(min_length=1)
    run_type: RunType
    user_agent: Optional[str] = None
    depth_limit: int = Field(default=3, ge=0)
    # sample 运行的入队上限；为空时不封顶
    sample_size: Optional[int] = Field(default=None, ge=1)
    # 为空或 0 表示不限
    token_limit: Optional[int] = Field(default=None, ge=0)
    excluded_url_patterns: list[str] = Field(default_factory=list)
    rubric_version: str = Field(default="v1", min_length=1)

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        v = value.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("base_url 必须是 http(s) 地址")
        return v

    @field_validator("excluded_url_patterns", mode="before")
    @classmethod
    def _normalize_patterns(cls, value):
        if value in (None, ""):
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item).strip() for item in value if str(item).strip()]


class CrawlStart(CamelModel):
    run_type: RunType


class CrawlResume(CamelModel):
    # 恢复前可提高上限；clear_token_limit=True 时改为不限
    token_limit: Optional[int] = Field(default=None, ge=1)
    clear_token_limit: bool = False


class CrawlRunOut(CamelModel):
    id: int
    project_id: int
    run_type: str
    status: str
    pages_discovered: int
    pages_processed: int
    token_usage: int
    token_limit: Optional[int] = None
    pause_requested: bool = False
    cancel_requested: bool = False
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PageScoreOut(CamelModel):
    id: int
    overall_score: int
    criteria_scores: dict
    recommendations: list
    rubric_version: str
    ai_tokens_used: int
    model: Optional[str] = None


class CrawlPageOut(CamelModel):
    page_id: int
    url: str
    page_type: Optional[str] = None
    last_error: Optional[str] = None
    content_hash: Optional[str] = None
    from_cache: bool = False
    word_count: int = 0
    captured_at: Optional[datetime] = None
    score: Optional[PageScoreOut] = None


class BudgetOut(CamelModel):
    run_id: int
    total_tokens: int
    limit: Optional[int] = None
    limited_mode: bool
    remaining: Optional[int] = None
    percent_used: Optional[int] = None
    estimated_cost_usd: float


__all__ = [
    "RunType",
    "RunStatus",
    "CrawlConfig",
    "CrawlStart",
    "CrawlResume",
    "CrawlRunOut",
    "PageScoreOut",
    "CrawlPageOut",
    "BudgetOut",
]

"""
应用配置加载模块
- 所有配置从 .env 加载（UTF-8）
- 通过 pydantic-settings 提供类型安全的设置对象
"""
from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """全局配置（.env）"""

    SITE_NAME: str = "AEO Platform"
    TIMEZONE: str | None = "UTC"

    SECRET_KEY: str = "please_change_me"
    ALGORITHM: str = "HS256"

    DATABASE_URL: str = "sqlite:///./data/aeo.db"
    # 启动时执行 Alembic upgrade head；关闭时退回 ORM create_all
    AUTO_MIGRATE: bool = True

    LOG_DIR: str = "logs"
    # 是否启用应用层访问日志兜底（当 Uvicorn 未开启 --access-log 时仍记录访问日志）
    APP_ACCESS_LOG: bool = True

    FRONTEND_ORIGINS: list[str] = ["http://localhost:3000"]
    # 反向代理地址；审计记录中的调用方 IP 依赖 X-Forwarded-For
    FORWARDED_TRUSTED_IPS: list[str] = ["127.0.0.1", "::1"]

    # ---- 抓取调度 ----
    START_SCHEDULER: bool = True
    # 同时执行的抓取任务上限（跨项目），同一项目始终最多一个
    MAX_CONCURRENT_RUNS: int = 2
    CRAWL_USER_AGENT: str = "AEO-Platform-Bot/1.0"
    FETCH_TIMEOUT_SECONDS: float = 30.0
    # 两次页面抓取之间的最小间隔（毫秒），robots.txt 的 Crawl-delay 更大时以其为准
    CRAWL_DELAY_MS: int = 0
    DEFAULT_DEPTH_LIMIT: int = 3

    # ---- AI 评分 ----
    RUBRIC_VERSION: str = "v1"
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    # 用于 token 预估的编码模型名
    TOKEN_MODEL: str = "gpt-4"
    # 单次评分允许的最大输出 token，同时计入预估上界
    SCORING_MAX_COMPLETION_TOKENS: int = 2000
    # 系统提示词与评分细则的固定开销（token）
    SCORING_PROMPT_OVERHEAD: int = 800
    # 超出该长度（字符）的正文在送评前截断
    SCORING_MAX_CONTENT_CHARS: int = 24000

    @field_validator("FRONTEND_ORIGINS", mode="before")
    @classmethod
    def _normalize_frontend_origins(cls, value):
        """支持逗号分隔或 JSON 数组形式的域名配置"""
        if value in (None, "", []):
            return ["http://localhost:3000"]
        if isinstance(value, str):
            items = [item.strip() for item in value.split(',') if item.strip()]
            return items or ["http://localhost:3000"]
        if isinstance(value, (tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return list(value)

    @field_validator("FORWARDED_TRUSTED_IPS", mode="before")
    @classmethod
    def _normalize_trusted_ips(cls, value):
        if value in (None, "", []):
            return ["127.0.0.1", "::1"]
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",") if item.strip()]
            return items or ["127.0.0.1", "::1"]
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("MAX_CONCURRENT_RUNS", mode="before")
    @classmethod
    def _normalize_max_runs(cls, value):
        if value in (None, ""):
            return 2
        return max(1, int(value))

    @field_validator("RUBRIC_VERSION", mode="before")
    @classmethod
    def _normalize_rubric_version(cls, value):
        v = str(value or "").strip()
        return v or "v1"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()

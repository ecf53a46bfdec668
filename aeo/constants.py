"""
全局常量定义模块。
- 抓取类型与运行状态
- 页面类型
- 角色常量
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List


# ---- 抓取运行 ----
RUN_TYPE_FULL = "full"
RUN_TYPE_SITEMAP_ONLY = "sitemap_only"
RUN_TYPE_SAMPLE = "sample"
RUN_TYPE_DELTA = "delta"
RUN_TYPES: List[str] = [RUN_TYPE_FULL, RUN_TYPE_SITEMAP_ONLY, RUN_TYPE_SAMPLE, RUN_TYPE_DELTA]

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
RUN_STATUSES: List[str] = [STATUS_QUEUED, STATUS_RUNNING, STATUS_PAUSED, STATUS_COMPLETED, STATUS_FAILED]

# 同一项目同一时刻最多一个处于这些状态的运行
ACTIVE_STATUSES: FrozenSet[str] = frozenset({STATUS_QUEUED, STATUS_RUNNING})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({STATUS_COMPLETED, STATUS_FAILED})
# 取消的运行以 failed 结束，error_message 固定为该文案
RUN_CANCELLED_MESSAGE = "运行已被取消"

# 合法状态迁移表：当前状态 -> 允许的目标状态
RUN_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATUS_QUEUED: frozenset({STATUS_RUNNING, STATUS_PAUSED, STATUS_FAILED}),
    # running -> queued 仅用于服务重启后回收遗留运行
    STATUS_RUNNING: frozenset({STATUS_QUEUED, STATUS_PAUSED, STATUS_COMPLETED, STATUS_FAILED}),
    # queued/paused -> failed：取消
    STATUS_PAUSED: frozenset({STATUS_QUEUED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_FAILED: frozenset(),
}

# ---- 待抓取队列条目状态 ----
ENTRY_PENDING = "pending"
ENTRY_PROCESSED = "processed"
ENTRY_UNCHANGED = "unchanged"

# ---- 页面类型 ----
PAGE_TYPES: List[str] = ["homepage", "product", "solution", "blog", "resource", "conversion"]
DEFAULT_PAGE_TYPE = "resource"

PAGE_TYPE_PATTERNS: Dict[str, List[str]] = {
    "homepage": [r"^/?$", r"^/index(\.\w+)?$", r"^/home/?$"],
    "conversion": [r"/pricing", r"/contact", r"/demo", r"/signup", r"/sign-up", r"/trial", r"/quote", r"/checkout"],
    "product": [r"/product", r"/features?(/|$)", r"/platform", r"/shop", r"/store"],
    "solution": [r"/solution", r"/use-cases?", r"/industr", r"/services?(/|$)"],
    "blog": [r"/blog", r"/news", r"/articles?(/|$)", r"/posts?(/|$)", r"/insights"],
    "resource": [r"/docs?(/|$)", r"/resources?", r"/guides?", r"/faq", r"/help", r"/whitepaper"],
}

# ---- 角色（组织内） ----
ROLE_VIEWER = "viewer"
ROLE_EDITOR = "editor"
ROLE_ADMIN = "admin"
# 数值越大权限越高：admin > editor > viewer
ROLE_RANK: Dict[str, int] = {ROLE_VIEWER: 1, ROLE_EDITOR: 2, ROLE_ADMIN: 3}

# ---- 其他常量 ----
CRAWL_RUN_LIST_LIMIT = 100

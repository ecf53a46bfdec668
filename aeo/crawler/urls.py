"""
URL 规范化、指纹与过滤工具
- 规范化后做 sha256 得到 url_hash，用于跨运行去重
- 排除规则支持 glob 与子串两种写法
"""
from __future__ import annotations

import fnmatch
import hashlib
import re
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from ..constants import DEFAULT_PAGE_TYPE, PAGE_TYPE_PATTERNS


TRACKING_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "fbclid", "fb_action_ids", "fb_action_types", "fb_source", "fb_ref",
    "gclid", "gclsrc", "dclid", "msclkid",
    "ref", "referrer", "_ga", "_gl", "mc_cid", "mc_eid",
    "igshid", "twclid", "li_fat_id",
    "mbid", "mkt_tok", "trk_contact", "trk_msg", "trk_module", "trk_sid",
}

_GLOB_CHARS = re.compile(r"[*?\[]")
_WHITESPACE = re.compile(r"\s+")


def normalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """规范化 URL；非 http(s) 或无法解析时返回 None。

    - 协议统一为 https，host 小写，去掉默认端口与片段
    - 去除常见追踪参数，剩余参数按 key 排序
    - 非根路径去掉结尾斜杠
    """
    if not url or not isinstance(url, str):
        return None
    raw = url.strip()
    if base:
        raw = urljoin(base, raw)
    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        return None

    host = parsed.hostname.lower()
    netloc = host if port in (None, 80, 443) else f"{host}:{port}"

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() not in TRACKING_PARAMS]
    params.sort(key=lambda item: item[0])
    query = urlencode(params)

    return urlunparse(("https", netloc, path, "", query, ""))


def url_hash(url: str) -> str:
    """规范化 URL 的稳定指纹"""
    normalized = normalize_url(url) or url
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_content(text: Optional[str]) -> str:
    """折叠空白，保证排版差异不影响内容指纹"""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


def content_hash(text: Optional[str]) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def is_excluded(url: str, patterns: Iterable[str]) -> bool:
    """命中任一排除规则即返回 True。

    含 * ? [ 的规则按 glob 匹配完整 URL 与路径，其余按子串匹配。
    """
    path = urlparse(url).path or "/"
    for pattern in patterns or ():
        pattern = (pattern or "").strip()
        if not pattern:
            continue
        if _GLOB_CHARS.search(pattern):
            if fnmatch.fnmatchcase(url, pattern) or fnmatch.fnmatchcase(path, pattern):
                return True
        elif pattern in url:
            return True
    return False


def is_same_site(url: str, base_url: str) -> bool:
    """同站判断：忽略 www. 前缀"""
    a = (urlparse(url).hostname or "").lower()
    b = (urlparse(base_url).hostname or "").lower()
    return bool(a) and a.removeprefix("www.") == b.removeprefix("www.")


def detect_page_type(url: str) -> str:
    """按路径归类页面类型"""
    path = (urlparse(url).path or "/").lower()
    for page_type, patterns in PAGE_TYPE_PATTERNS.items():
        for pattern in patterns:
            if re.search(pattern, path):
                return page_type
    return DEFAULT_PAGE_TYPE


__all__ = [
    "normalize_url",
    "url_hash",
    "normalize_content",
    "content_hash",
    "is_excluded",
    "is_same_site",
    "detect_page_type",
]

"""
外部协作方接口与默认实现

- Fetcher：抓取页面正文与链接、判断 robots.txt 是否允许
- SitemapSource：发现项目的 sitemap URL
- Scorer：AI 评分（见 scoring.py）

默认实现基于 requests；测试中注入确定性的桩实现。
"""
from __future__ import annotations

import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

import requests
from bs4 import BeautifulSoup

from ..config import settings
from .errors import FetchFailure

logger = logging.getLogger(__name__)

SITEMAP_PATHS = [
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap-index.xml",
    "/wp-sitemap.xml",
    "/sitemaps/sitemap.xml",
]
SITEMAP_NS = "{http://www.sitemaps.org/schemas/sitemap/0.9}"
MAX_NESTED_SITEMAPS = 50
STRIP_TAGS = ["script", "style", "noscript", "iframe", "svg", "template"]


@dataclass
class FetchResult:
    url: str
    content: str = ""
    links: List[str] = field(default_factory=list)
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScoreResult:
    criteria_scores: Dict[str, int]
    overall_score: int
    recommendations: List[dict]
    tokens_used: int
    model: Optional[str] = None


class Fetcher(Protocol):
    def fetch(self, url: str) -> FetchResult:
        ...

    def is_allowed(self, url: str) -> bool:
        ...

    def crawl_delay(self, url: str) -> Optional[float]:
        """robots.txt 声明的 Crawl-delay（秒），未声明返回 None"""
        ...


class SitemapSource(Protocol):
    def discover_sitemap_urls(self, project) -> List[str]:
        ...


class Scorer(Protocol):
    def score(self, content: str, rubric_version: str) -> ScoreResult:
        ...


@dataclass
class CrawlCollaborators:
    fetcher: Fetcher
    sitemaps: SitemapSource
    scorer: Scorer


def guarded_fetch(fetcher: Fetcher, url: str) -> FetchResult:
    """抓取协作方抛出的异常转换为带 error 的结果，单页失败不影响整个运行"""
    try:
        return fetcher.fetch(url)
    except Exception as exc:  # noqa: BLE001
        return FetchResult(url=url, error=str(FetchFailure(url, f"{exc.__class__.__name__}: {exc}")))


def extract_text_and_links(html: str, base_url: str) -> tuple[str, List[str]]:
    """提取可见文本与绝对链接（保持页面内出现顺序，去重）"""
    soup = BeautifulSoup(html or "", "html.parser")
    links: List[str] = []
    seen = set()
    for tag in soup.find_all("a", href=True):
        href = urljoin(base_url, tag["href"].strip())
        if href not in seen:
            seen.add(href)
            links.append(href)
    for tag in soup(STRIP_TAGS):
        tag.decompose()
    body = soup.body or soup
    text = body.get_text(" ", strip=True)
    return text, links


class HttpFetcher:
    """基于 requests 的页面抓取与 robots.txt 判断（按 host 缓存规则）"""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.user_agent = user_agent or settings.CRAWL_USER_AGENT
        self.timeout = timeout or settings.FETCH_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": self.user_agent})
        self._robots: Dict[str, Optional[RobotFileParser]] = {}
        self._lock = threading.Lock()

    def fetch(self, url: str) -> FetchResult:
        try:
            resp = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as exc:
            return FetchResult(url=url, error=f"请求失败：{exc}")
        if resp.status_code >= 400:
            return FetchResult(url=url, status_code=resp.status_code, error=f"HTTP {resp.status_code}")
        content_type = resp.headers.get("Content-Type", "")
        if content_type and "html" not in content_type and "text" not in content_type:
            return FetchResult(url=url, status_code=resp.status_code, error=f"不支持的内容类型：{content_type}")
        text, links = extract_text_and_links(resp.text, resp.url or url)
        return FetchResult(url=url, content=text, links=links, status_code=resp.status_code)

    def _robots_for(self, url: str) -> Optional[RobotFileParser]:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        with self._lock:
            if origin in self._robots:
                return self._robots[origin]
        parser: Optional[RobotFileParser] = RobotFileParser()
        try:
            resp = self.session.get(urljoin(origin, "/robots.txt"), timeout=self.timeout)
            if resp.status_code in (401, 403):
                parser.disallow_all = True
            elif resp.status_code >= 400:
                parser.allow_all = True
            else:
                parser.parse(resp.text.splitlines())
        except requests.RequestException as exc:
            logger.warning("读取 robots.txt 失败（%s），按允许处理：%s", origin, exc)
            parser = None
        with self._lock:
            self._robots[origin] = parser
        return parser

    def is_allowed(self, url: str) -> bool:
        parser = self._robots_for(url)
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    def crawl_delay(self, url: str) -> Optional[float]:
        parser = self._robots_for(url)
        if parser is None:
            return None
        delay = parser.crawl_delay(self.user_agent)
        return float(delay) if delay is not None else None

    def sitemap_hints(self, url: str) -> List[str]:
        parser = self._robots_for(url)
        if parser is None:
            return []
        return list(parser.site_maps() or [])


class SitemapDiscovery:
    """从 robots.txt 提示与常见路径发现 sitemap，并展开 sitemap index"""

    def __init__(self, fetcher: Optional[HttpFetcher] = None):
        self.fetcher = fetcher or HttpFetcher()

    def _get(self, url: str) -> Optional[str]:
        try:
            resp = self.fetcher.session.get(url, timeout=self.fetcher.timeout, allow_redirects=True)
        except requests.RequestException:
            return None
        if resp.status_code != 200:
            return None
        return resp.text

    @staticmethod
    def _parse(xml_text: str) -> tuple[List[str], List[str]]:
        """返回 (页面 URL 列表, 子 sitemap 列表)"""
        try:
            root = ET.fromstring(xml_text.encode("utf-8"))
        except ET.ParseError:
            return [], []
        tag = root.tag.replace(SITEMAP_NS, "")
        locs = [
            (el.text or "").strip()
            for el in root.iter()
            if el.tag.replace(SITEMAP_NS, "") == "loc" and (el.text or "").strip()
        ]
        if tag == "sitemapindex":
            return [], locs
        return locs, []

    def discover_sitemap_urls(self, project) -> List[str]:
        base = project.target_url
        parsed = urlparse(base)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        candidates = self.fetcher.sitemap_hints(base) + [urljoin(origin, p) for p in SITEMAP_PATHS]

        urls: List[str] = []
        seen_urls = set()
        visited = set()
        queue = list(candidates)
        found_root = False
        while queue and len(visited) < MAX_NESTED_SITEMAPS:
            sitemap_url = queue.pop(0)
            if sitemap_url in visited:
                continue
            visited.add(sitemap_url)
            body = self._get(sitemap_url)
            if not body:
                continue
            pages, children = self._parse(body)
            if not pages and not children:
                continue
            found_root = True
            for page_url in pages:
                if page_url not in seen_urls:
                    seen_urls.add(page_url)
                    urls.append(page_url)
            queue = children + queue
            # 顶层只取第一个有效 sitemap，其余候选路径通常是同一份内容
            if sitemap_url in candidates:
                queue = [item for item in queue if item not in candidates]
        if not found_root:
            logger.info("未发现 sitemap：%s", base)
        return urls


__all__ = [
    "FetchResult",
    "ScoreResult",
    "Fetcher",
    "SitemapSource",
    "Scorer",
    "CrawlCollaborators",
    "HttpFetcher",
    "SitemapDiscovery",
    "extract_text_and_links",
]

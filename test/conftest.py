import os
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# 必须在导入 aeo 之前设置：关闭自动迁移与后台调度，预估只计正文 token
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTO_MIGRATE", "false")
os.environ.setdefault("START_SCHEDULER", "false")
os.environ.setdefault("APP_ACCESS_LOG", "false")
os.environ.setdefault("LOG_DIR", str(Path(tempfile.gettempdir()) / "aeo-test-logs"))
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("SCORING_PROMPT_OVERHEAD", "0")
os.environ.setdefault("SCORING_MAX_COMPLETION_TOKENS", "0")
os.environ.setdefault("CRAWL_DELAY_MS", "0")

from aeo.constants import STATUS_QUEUED, TERMINAL_STATUSES  # noqa: E402
from aeo.crawler.collaborators import CrawlCollaborators, FetchResult, ScoreResult  # noqa: E402
from aeo.crawler.ledger import EncoderRegistry  # noqa: E402
from aeo.crawler.orchestrator import CrawlRunOrchestrator  # noqa: E402
from aeo.crawler.scheduler import RunScheduler, build_config_snapshot  # noqa: E402
from aeo.database import Base  # noqa: E402
from aeo.models import CrawlRun, Organization, Project  # noqa: E402

BASE_URL = "https://example.com/"


class WordEncoder:
    """确定性编码器：每个空白分隔的词计 1 个 token"""

    def encode(self, text):
        return text.split()


class StubFetcher:
    def __init__(self, pages=None, errors=None, disallowed=None):
        self.pages = dict(pages or {})
        self.errors = set(errors or ())
        self.disallowed = set(disallowed or ())
        self.hooks = {}
        self.raising = {}
        self.crawl_delays = {}
        self.calls = []
        self._lock = threading.Lock()

    def add_page(self, url, content, links=()):
        self.pages[url] = (content, list(links))

    def fetch(self, url):
        with self._lock:
            self.calls.append(url)
        hook = self.hooks.get(url)
        if hook is not None:
            hook()
        if url in self.raising:
            raise self.raising[url]
        if url in self.errors or url not in self.pages:
            return FetchResult(url=url, status_code=404, error="HTTP 404")
        content, links = self.pages[url]
        return FetchResult(url=url, content=content, links=list(links), status_code=200)

    def is_allowed(self, url):
        return url not in self.disallowed

    def crawl_delay(self, url):
        return self.crawl_delays.get(url)


class StubSitemaps:
    def __init__(self, urls=None):
        self.urls = list(urls or [])

    def discover_sitemap_urls(self, project):
        return list(self.urls)


class StubScorer:
    """token 用量 = 词数；总分由内容长度决定"""

    def __init__(self, fail_on=None):
        self.fail_on = set(fail_on or ())
        self.calls = []
        self._lock = threading.Lock()

    def score(self, content, rubric_version):
        with self._lock:
            self.calls.append(content)
        if content in self.fail_on:
            raise RuntimeError("model unavailable")
        overall = len(content) % 101
        return ScoreResult(
            criteria_scores={"structure": overall},
            overall_score=overall,
            recommendations=[{"criterion": "structure", "priority": "low", "recommendation": "ok"}],
            tokens_used=len(content.split()),
            model="stub-model",
        )


def words(prefix, count):
    return " ".join(f"{prefix}{i}" for i in range(count))


def make_session_factory(db_path):
    """基于临时文件的 SQLite：多线程各自持有连接"""
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def make_project(session_factory, **overrides):
    db = session_factory()
    try:
        org = db.query(Organization).filter(Organization.slug == "acme").first()
        if org is None:
            org = Organization(name="Acme", slug="acme")
            db.add(org)
            db.flush()
        values = {"name": "Acme site", "target_url": BASE_URL, "depth_limit": 3}
        values.update(overrides)
        project = Project(organization_id=org.id, **values)
        db.add(project)
        db.commit()
        return project
    finally:
        db.close()


def create_run(session_factory, project, run_type="full", **snapshot_overrides):
    db = session_factory()
    try:
        project = db.get(Project, project.id)
        snapshot = build_config_snapshot(project, run_type)
        snapshot.update(snapshot_overrides)
        run = CrawlRun(project_id=project.id, run_type=run_type, status=STATUS_QUEUED, config_snapshot=snapshot)
        db.add(run)
        db.commit()
        return run
    finally:
        db.close()


def load_run(session_factory, run_id):
    db = session_factory()
    try:
        return db.get(CrawlRun, run_id)
    finally:
        db.close()


def wait_for_status(session_factory, run_id, statuses=TERMINAL_STATUSES, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        run = load_run(session_factory, run_id)
        if run is not None and run.status in statuses:
            return run
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not reach {sorted(statuses)} in time")


class Harness:
    """同步驱动单个编排器（不经过调度线程）"""

    def __init__(self, session_factory, fetcher, sitemaps, scorer):
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.sitemaps = sitemaps
        self.scorer = scorer
        self.encoders = EncoderRegistry(loader=lambda name: WordEncoder())

    def collaborators(self, config):
        return CrawlCollaborators(fetcher=self.fetcher, sitemaps=self.sitemaps, scorer=self.scorer)

    def orchestrator(self, run_id):
        return CrawlRunOrchestrator(
            run_id,
            self.session_factory,
            self.collaborators,
            encoder_registry=self.encoders,
            crawl_delay_ms=0,
        )

    def start(self, orch):
        db = self.session_factory()
        try:
            orch.mark_running(db, db.get(CrawlRun, orch.run_id))
        finally:
            db.close()
        orch.execute()
        return load_run(self.session_factory, orch.run_id)

    def request_pause(self, orch):
        db = self.session_factory()
        try:
            orch.request_pause(db, db.get(CrawlRun, orch.run_id))
        finally:
            db.close()

    def cancel(self, orch):
        db = self.session_factory()
        try:
            orch.request_cancel(db, db.get(CrawlRun, orch.run_id))
        finally:
            db.close()
        return load_run(self.session_factory, orch.run_id)

    def resume(self, orch, **kwargs):
        db = self.session_factory()
        try:
            run = orch.prepare_resume(db, db.get(CrawlRun, orch.run_id), **kwargs)
            orch.mark_running(db, run)
        finally:
            db.close()
        orch.execute()
        return load_run(self.session_factory, orch.run_id)


@pytest.fixture()
def session_factory(tmp_path):
    """每个测试独立的 SQLite 文件数据库"""
    engine, factory = make_session_factory(tmp_path / "aeo-test.db")
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def fetcher():
    return StubFetcher()


@pytest.fixture()
def sitemaps():
    return StubSitemaps()


@pytest.fixture()
def scorer():
    return StubScorer()


@pytest.fixture()
def harness(session_factory, fetcher, sitemaps, scorer):
    return Harness(session_factory, fetcher, sitemaps, scorer)


@pytest.fixture()
def scheduler(harness):
    """使用桩协作方的调度器，测试结束时停止"""
    sched = RunScheduler(
        harness.session_factory,
        harness.collaborators,
        max_concurrent_runs=2,
        encoder_registry=harness.encoders,
        crawl_delay_ms=0,
    )
    try:
        yield sched
    finally:
        sched.shutdown(timeout=5)

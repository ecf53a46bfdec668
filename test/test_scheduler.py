import threading

import pytest

from aeo.constants import (
    RUN_CANCELLED_MESSAGE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAUSED,
    STATUS_QUEUED,
    STATUS_RUNNING,
)
from aeo.crawler.errors import InvalidTransition, SchedulingConflict
from aeo.crawler.scheduler import RunScheduler
from aeo.models import CrawlRun

from conftest import BASE_URL, create_run, load_run, make_project, wait_for_status, words


@pytest.fixture()
def site(fetcher):
    fetcher.add_page(BASE_URL, words("home", 10), [f"{BASE_URL}a", f"{BASE_URL}b"])
    fetcher.add_page(f"{BASE_URL}a", words("alpha", 10))
    fetcher.add_page(f"{BASE_URL}b", words("bravo", 10))
    return fetcher


@pytest.fixture()
def gate(site):
    """首页抓取时阻塞，直到测试放行"""
    entered = threading.Event()
    release = threading.Event()

    def hook():
        entered.set()
        release.wait(5)

    site.hooks[BASE_URL] = hook
    yield entered, release
    release.set()


def test_enqueue_runs_to_completion(scheduler, session_factory, site):
    project = make_project(session_factory)

    run = scheduler.enqueue(project.id, "full", created_by="user-1")
    assert run.status in (STATUS_QUEUED, STATUS_RUNNING)
    assert run.config_snapshot["base_url"] == BASE_URL

    final = wait_for_status(session_factory, run.id)
    assert final.status == STATUS_COMPLETED
    assert final.pages_processed == 3
    assert final.created_by == "user-1"
    assert final.started_at is not None


def test_second_active_run_for_project_conflicts(scheduler, session_factory, gate):
    entered, release = gate
    project = make_project(session_factory)
    first = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)

    with pytest.raises(SchedulingConflict) as excinfo:
        scheduler.enqueue(project.id, "sample")
    assert excinfo.value.active_run_id == first.id

    release.set()
    assert wait_for_status(session_factory, first.id).status == STATUS_COMPLETED
    second = scheduler.enqueue(project.id, "delta")
    assert wait_for_status(session_factory, second.id).status == STATUS_COMPLETED


def test_concurrency_cap_keeps_runs_queued(harness, session_factory, gate):
    entered, release = gate
    sched = RunScheduler(
        session_factory,
        harness.collaborators,
        max_concurrent_runs=1,
        encoder_registry=harness.encoders,
        crawl_delay_ms=0,
    )
    try:
        first = sched.enqueue(make_project(session_factory).id, "full")
        assert entered.wait(5)
        second = sched.enqueue(make_project(session_factory, name="Other").id, "full")
        assert load_run(session_factory, second.id).status == STATUS_QUEUED

        # 排队中的运行暂停后直接进入 paused
        assert sched.pause(second.id).status == STATUS_PAUSED
        assert sched.resume(second.id).status == STATUS_QUEUED

        release.set()
        assert wait_for_status(session_factory, first.id).status == STATUS_COMPLETED
        assert wait_for_status(session_factory, second.id).status == STATUS_COMPLETED
    finally:
        sched.shutdown(timeout=5)


def test_pause_running_run_takes_effect_at_page_boundary(scheduler, session_factory, gate):
    entered, release = gate
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)
    assert scheduler.is_active(run.id)

    requested = scheduler.pause(run.id)
    assert requested.status == STATUS_RUNNING
    assert requested.pause_requested is True

    release.set()
    paused = wait_for_status(session_factory, run.id, {STATUS_PAUSED})
    assert paused.pages_processed == 1
    assert paused.pause_requested is False

    scheduler.resume(run.id)
    final = wait_for_status(session_factory, run.id)
    assert final.status == STATUS_COMPLETED
    assert final.pages_processed == 3


def test_resume_requires_paused_run(scheduler, session_factory, site):
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    wait_for_status(session_factory, run.id)

    with pytest.raises(InvalidTransition):
        scheduler.resume(run.id)
    with pytest.raises(InvalidTransition):
        scheduler.pause(run.id)


def test_resume_conflicts_with_newer_active_run(scheduler, session_factory, gate):
    entered, release = gate
    project = make_project(session_factory)
    first = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)
    scheduler.pause(first.id)
    release.set()
    wait_for_status(session_factory, first.id, {STATUS_PAUSED})

    entered.clear()
    release.clear()
    second = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)
    with pytest.raises(SchedulingConflict):
        scheduler.resume(first.id)

    release.set()
    assert wait_for_status(session_factory, second.id).status == STATUS_COMPLETED
    assert load_run(session_factory, first.id).status == STATUS_PAUSED


def test_recover_requeues_orphaned_runs(scheduler, session_factory):
    project = make_project(session_factory)
    other = make_project(session_factory, name="Other")
    orphan = create_run(session_factory, project, "full")
    pausing = create_run(session_factory, other, "full")
    db = session_factory()
    try:
        db.get(CrawlRun, orphan.id).status = STATUS_RUNNING
        row = db.get(CrawlRun, pausing.id)
        row.status = STATUS_RUNNING
        row.pause_requested = True
        db.commit()
    finally:
        db.close()

    assert scheduler.recover() == 2

    assert load_run(session_factory, orphan.id).status == STATUS_QUEUED
    recovered = load_run(session_factory, pausing.id)
    assert recovered.status == STATUS_PAUSED
    assert recovered.pause_requested is False


def test_shutdown_requeues_running_run(scheduler, session_factory, gate):
    entered, release = gate
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)

    threading.Timer(0.1, release.set).start()
    scheduler.shutdown(timeout=5)

    stopped = load_run(session_factory, run.id)
    assert stopped.status == STATUS_QUEUED
    assert stopped.pages_processed == 1
    assert scheduler.dispatch() == []


def test_budget_reports_persisted_usage(scheduler, session_factory, site):
    project = make_project(session_factory, token_limit=100)
    run = scheduler.enqueue(project.id, "full")
    wait_for_status(session_factory, run.id)
    assert scheduler.join(run.id, timeout=5)

    stats = scheduler.budget(run.id)
    assert stats["total_tokens"] == 30
    assert stats["limit"] == 100
    assert stats["remaining"] == 70


def _worker_thread(run_id):
    for thread in threading.enumerate():
        if thread.name == f"crawl-run-{run_id}":
            return thread
    return None


def test_quick_resume_keeps_new_worker_tracked(scheduler, session_factory, gate, site):
    entered, release = gate
    second_release = threading.Event()
    site.hooks[f"{BASE_URL}a"] = lambda: second_release.wait(5)
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)
    old = _worker_thread(run.id)
    assert old is not None
    scheduler.pause(run.id)

    try:
        # 持有调度器锁：旧线程暂停后停在退出清理处，恢复时新线程已登记
        with scheduler._lock:
            release.set()
            wait_for_status(session_factory, run.id, {STATUS_PAUSED})
            scheduler.resume(run.id)
            assert scheduler._threads[run.id] is not old
        old.join(5)
        assert not old.is_alive()
        assert scheduler.is_active(run.id)
        assert run.id in scheduler._orchestrators
    finally:
        second_release.set()

    final = wait_for_status(session_factory, run.id)
    assert final.status == STATUS_COMPLETED
    assert final.pages_processed == 3
    assert scheduler.join(run.id, timeout=5)


def test_orchestrators_are_released_when_workers_exit(scheduler, session_factory, site):
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    assert wait_for_status(session_factory, run.id).status == STATUS_COMPLETED
    assert scheduler.join(run.id, timeout=5)
    assert scheduler._orchestrators == {}

    # 已结束运行的预算查询不会重新登记实例
    assert scheduler.budget(run.id)["total_tokens"] == 30
    assert scheduler._orchestrators == {}

    queued = create_run(session_factory, make_project(session_factory, name="Other"), "full")
    scheduler.pause(queued.id)
    assert scheduler._orchestrators == {}


def test_cancel_running_run(scheduler, session_factory, gate):
    entered, release = gate
    project = make_project(session_factory)
    run = scheduler.enqueue(project.id, "full")
    assert entered.wait(5)

    requested = scheduler.cancel(run.id)
    assert requested.status == STATUS_RUNNING
    assert requested.cancel_requested is True

    release.set()
    final = wait_for_status(session_factory, run.id)
    assert final.status == STATUS_FAILED
    assert final.error_message == RUN_CANCELLED_MESSAGE
    assert final.pages_processed == 1
    assert scheduler.join(run.id, timeout=5)
    assert run.id not in scheduler._orchestrators

    with pytest.raises(InvalidTransition):
        scheduler.cancel(run.id)
    # 取消后同一项目可以立即启动新运行
    fresh = scheduler.enqueue(project.id, "full")
    assert wait_for_status(session_factory, fresh.id).status == STATUS_COMPLETED


def test_cancel_queued_run_never_starts(scheduler, session_factory, gate):
    entered, release = gate
    busy = scheduler.enqueue(make_project(session_factory).id, "full")
    assert entered.wait(5)
    project = make_project(session_factory, name="Other")
    queued = create_run(session_factory, project, "full")

    cancelled = scheduler.cancel(queued.id)
    assert cancelled.status == STATUS_FAILED
    assert cancelled.error_message == RUN_CANCELLED_MESSAGE

    release.set()
    assert wait_for_status(session_factory, busy.id).status == STATUS_COMPLETED
    assert load_run(session_factory, queued.id).pages_processed == 0


def test_recover_finishes_cancelled_orphan(scheduler, session_factory):
    run = create_run(session_factory, make_project(session_factory), "full")
    db = session_factory()
    try:
        row = db.get(CrawlRun, run.id)
        row.status = STATUS_RUNNING
        row.cancel_requested = True
        db.commit()
    finally:
        db.close()

    assert scheduler.recover() == 1
    recovered = load_run(session_factory, run.id)
    assert recovered.status == STATUS_FAILED
    assert recovered.error_message == RUN_CANCELLED_MESSAGE

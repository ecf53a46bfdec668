import threading

import pytest
from fastapi.testclient import TestClient

from aeo.auth import create_access_token
from aeo.dependencies import get_db, get_scheduler
from aeo.main import app
from aeo.models import OperationAuditLog

from conftest import BASE_URL, create_run, make_project, wait_for_status, words


def _headers(role="editor", subject="user-1"):
    return {"Authorization": f"Bearer {create_access_token(subject, role)}"}


@pytest.fixture()
def client(session_factory, scheduler, fetcher):
    """注入测试数据库与桩调度器的 TestClient"""
    fetcher.add_page(BASE_URL, words("home", 10), [f"{BASE_URL}a", f"{BASE_URL}b"])
    fetcher.add_page(f"{BASE_URL}a", words("alpha", 10))
    fetcher.add_page(f"{BASE_URL}b", words("bravo", 10))

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_scheduler, None)


def test_requires_authentication(client):
    assert client.get("/api/crawls/1").status_code == 401
    response = client.get("/api/crawls/1", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_viewer_can_read_but_not_start(client, session_factory):
    project = make_project(session_factory)

    response = client.post(
        f"/api/projects/{project.id}/crawls",
        json={"runType": "full"},
        headers=_headers("viewer"),
    )
    assert response.status_code == 403

    listing = client.get(f"/api/projects/{project.id}/crawls", headers=_headers("viewer"))
    assert listing.status_code == 200
    assert listing.json() == []

    assert client.get("/api/crawls/1", headers=_headers("guest")).status_code == 403


def test_start_crawl_and_inspect_results(client, session_factory):
    project = make_project(session_factory, token_limit=1000)

    response = client.post(
        f"/api/projects/{project.id}/crawls",
        json={"runType": "full"},
        headers=_headers(),
    )
    assert response.status_code == 201
    created = response.json()
    assert created["runType"] == "full"
    assert created["projectId"] == project.id
    assert created["createdBy"] == "user-1"
    assert created["tokenLimit"] == 1000
    run_id = created["id"]

    wait_for_status(session_factory, run_id)
    status_payload = client.get(f"/api/crawls/{run_id}", headers=_headers("viewer")).json()
    assert status_payload["status"] == "completed"
    assert status_payload["pagesProcessed"] == 3
    assert status_payload["pagesDiscovered"] == 3
    assert status_payload["tokenUsage"] == 30

    pages = client.get(f"/api/crawls/{run_id}/pages", headers=_headers("viewer")).json()
    assert [p["url"] for p in pages] == [BASE_URL, f"{BASE_URL}a", f"{BASE_URL}b"]
    assert pages[0]["pageType"] == "homepage"
    assert pages[0]["score"]["aiTokensUsed"] == 10
    assert pages[0]["score"]["model"] == "stub-model"
    assert pages[0]["fromCache"] is False

    budget = client.get(f"/api/crawls/{run_id}/budget", headers=_headers("viewer")).json()
    assert budget["runId"] == run_id
    assert budget["totalTokens"] == 30
    assert budget["limit"] == 1000
    assert budget["remaining"] == 970
    assert budget["limitedMode"] is True

    session = session_factory()
    try:
        actions = [row.action for row in session.query(OperationAuditLog).all()]
        assert actions == ["crawl.start"]
    finally:
        session.close()


def test_start_conflict_and_unknown_project(client, session_factory, fetcher):
    entered = threading.Event()
    release = threading.Event()

    def hook():
        entered.set()
        release.wait(5)

    fetcher.hooks[BASE_URL] = hook
    project = make_project(session_factory)
    try:
        first = client.post(f"/api/projects/{project.id}/crawls", json={"runType": "full"}, headers=_headers())
        assert first.status_code == 201
        assert entered.wait(5)

        second = client.post(f"/api/projects/{project.id}/crawls", json={"runType": "sample"}, headers=_headers())
        assert second.status_code == 409
    finally:
        release.set()
    wait_for_status(session_factory, first.json()["id"])

    missing = client.post("/api/projects/9999/crawls", json={"runType": "full"}, headers=_headers())
    assert missing.status_code == 404
    bad_type = client.post(f"/api/projects/{project.id}/crawls", json={"runType": "weekly"}, headers=_headers())
    assert bad_type.status_code == 422


def test_pause_and_resume_with_new_limit(client, session_factory):
    project = make_project(session_factory)
    run = create_run(session_factory, project, "full")

    paused = client.post(f"/api/crawls/{run.id}/pause", headers=_headers())
    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"

    resumed = client.post(f"/api/crawls/{run.id}/resume", json={"tokenLimit": 500}, headers=_headers())
    assert resumed.status_code == 200
    assert resumed.json()["tokenLimit"] == 500
    assert resumed.json()["status"] in ("queued", "running")

    final = wait_for_status(session_factory, run.id)
    assert final.status == "completed"
    assert final.config_snapshot["token_limit"] == 500

    session = session_factory()
    try:
        logs = session.query(OperationAuditLog).order_by(OperationAuditLog.id.asc()).all()
        assert [row.action for row in logs] == ["crawl.pause", "crawl.resume"]
        assert logs[0].before["status"] == "queued"
        assert logs[0].after["status"] == "paused"
        assert logs[1].actor_id == "user-1"
    finally:
        session.close()


def test_invalid_transitions_return_400(client, session_factory):
    project = make_project(session_factory)
    run_id = client.post(f"/api/projects/{project.id}/crawls", json={"runType": "full"}, headers=_headers()).json()["id"]
    wait_for_status(session_factory, run_id)

    assert client.post(f"/api/crawls/{run_id}/pause", headers=_headers()).status_code == 400
    assert client.post(f"/api/crawls/{run_id}/resume", headers=_headers()).status_code == 400
    assert client.post("/api/crawls/9999/pause", headers=_headers()).status_code == 404
    assert client.get("/api/crawls/9999/budget", headers=_headers()).status_code == 404


def test_list_filters_by_status(client, session_factory):
    project = make_project(session_factory)
    done_id = client.post(f"/api/projects/{project.id}/crawls", json={"runType": "full"}, headers=_headers()).json()["id"]
    wait_for_status(session_factory, done_id)
    queued = create_run(session_factory, project, "sample")

    everything = client.get(f"/api/projects/{project.id}/crawls", headers=_headers("viewer")).json()
    assert [row["id"] for row in everything] == [queued.id, done_id]

    completed = client.get(
        f"/api/projects/{project.id}/crawls",
        params={"status": "completed"},
        headers=_headers("viewer"),
    ).json()
    assert [row["id"] for row in completed] == [done_id]

    bad = client.get(f"/api/projects/{project.id}/crawls", params={"status": "bogus"}, headers=_headers("viewer"))
    assert bad.status_code == 400


def test_cancel_queued_run(client, session_factory):
    project = make_project(session_factory)
    run = create_run(session_factory, project, "full")

    response = client.post(f"/api/crawls/{run.id}/cancel", headers=_headers())
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "failed"
    assert payload["cancelRequested"] is True
    assert payload["errorMessage"] == "运行已被取消"
    assert payload["completedAt"] is not None

    again = client.post(f"/api/crawls/{run.id}/cancel", headers=_headers())
    assert again.status_code == 400
    assert client.post(f"/api/crawls/{run.id}/resume", headers=_headers()).status_code == 400
    assert client.post("/api/crawls/9999/cancel", headers=_headers()).status_code == 404
    assert client.post(f"/api/crawls/{run.id}/cancel", headers=_headers("viewer")).status_code == 403

    session = session_factory()
    try:
        logs = session.query(OperationAuditLog).all()
        assert [row.action for row in logs] == ["crawl.cancel"]
        assert logs[0].before["status"] == "queued"
        assert logs[0].after["status"] == "failed"
    finally:
        session.close()

# tests/test_api.py

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

import main
import security
from main import get_current_subject
from queries import TaskQueryHandler
from security import CredentialVerifier, RequestContext
from settings import Settings

from .conftest import PASSWORD, SECRET
from .test_queries import SlowStore


def body(r):
    payload = r.json()
    assert set(payload) == {"statusCode", "message", "data", "error"}
    assert payload["statusCode"] == r.status_code
    return payload


def create_task(client: TestClient, headers: dict, title: str, due: str, **extra) -> dict:
    r = client.post("/api/user/tasks", headers=headers, json={"title": title, "dueDate": due, **extra})
    assert r.status_code == 201, r.text
    return r.json()["data"]


# ---- Auth gate over HTTP ----


@pytest.fixture()
def probe_app(app: FastAPI) -> tuple[FastAPI, list]:
    calls: list[int | None] = []

    @app.get("/probe")
    async def probe(ctx: RequestContext = Depends(get_current_subject)):
        calls.append(ctx.subject_id)
        return {"subject": ctx.subject_id}

    return app, calls


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Basic YWxpY2U6cHc="},
        {"Authorization": "Bearer"},
        {"Authorization": "Token abc"},
        {"Authorization": "Bearer not-a-jwt"},
    ],
)
def test_unauthenticated_requests_never_reach_handler(probe_app, headers: dict) -> None:
    app, calls = probe_app
    with TestClient(app) as c:
        r = c.get("/probe", headers=headers)
    payload = body(r)
    assert r.status_code == 401
    assert payload["error"] == "Unauthenticated"
    assert payload["data"] is None
    assert calls == []


def test_forged_and_expired_tokens_are_forbidden(probe_app) -> None:
    app, calls = probe_app
    forged = CredentialVerifier("another-secret-0123456789abcdef0123456789abcdef").issue(1)
    expired = CredentialVerifier(SECRET).issue(1, ttl_seconds=-5)
    with TestClient(app) as c:
        for token in (forged, expired):
            r = c.get("/probe", headers={"Authorization": f"Bearer {token}"})
            assert r.status_code == 403
            assert body(r)["error"] == "Forbidden"
    assert calls == []


def test_valid_token_reaches_handler_with_subject(probe_app) -> None:
    app, calls = probe_app
    with TestClient(app) as c:
        c.post("/api/auth/register", json={"username": "carol", "email": "carol@example.com", "password": PASSWORD})
        token = c.post("/api/auth/login", json={"username": "carol", "password": PASSWORD}).json()["data"]["token"]
        r = c.get("/probe", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert calls == [r.json()["subject"]]
    assert calls[0] is not None


# ---- Register / login / profile ----


def test_register_and_login(client: TestClient) -> None:
    r = client.post(
        "/api/auth/register",
        json={"username": "alice", "email": "Alice@Example.com", "password": PASSWORD},
    )
    payload = body(r)
    assert r.status_code == 201
    assert payload["data"]["username"] == "alice"
    assert payload["data"]["email"] == "alice@example.com"
    assert "password_hash" not in payload["data"]

    r = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    data = body(r)["data"]
    assert r.status_code == 200
    assert data["token"] and data["expires_in"] == 3600


def test_register_rejects_duplicates_and_weak_passwords(client: TestClient) -> None:
    client.post("/api/auth/register", json={"username": "alice", "email": "a@example.com", "password": PASSWORD})

    dup = client.post("/api/auth/register", json={"username": "alice", "email": "b@example.com", "password": PASSWORD})
    assert dup.status_code == 400
    assert body(dup)["error"] == "Conflict"

    weak = client.post("/api/auth/register", json={"username": "bob", "email": "b@example.com", "password": "password1"})
    assert weak.status_code == 400
    assert body(weak)["error"] == "ValidationError"

    bad_email = client.post("/api/auth/register", json={"username": "bob", "email": "bob-at-mail", "password": PASSWORD})
    assert bad_email.status_code == 400


def test_login_with_wrong_password(client: TestClient, auth_headers: dict) -> None:
    r = client.post("/api/auth/login", json={"username": "alice", "password": "Wr0ng!pass"})
    assert r.status_code == 401
    assert body(r)["data"] is None
    assert body(r)["error"] == "Unauthenticated"

    r = client.post("/api/auth/login", json={"username": "nobody", "password": PASSWORD})
    assert r.status_code == 401
    assert body(r)["error"] == "Unauthenticated"


def test_profile_update_and_delete(client: TestClient, login) -> None:
    alice = login("alice")
    login("bob")

    r = client.get("/api/user/profile", headers=alice)
    assert body(r)["data"]["username"] == "alice"

    taken = client.put(
        "/api/user/profile",
        headers=alice,
        json={"username": "bob", "email": "alice@example.com", "password": PASSWORD},
    )
    assert taken.status_code == 400

    r = client.put(
        "/api/user/profile",
        headers=alice,
        json={"username": "alice2", "email": "alice2@example.com", "password": "N3w!passw0rd"},
    )
    assert r.status_code == 200
    assert body(r)["data"]["username"] == "alice2"

    create_task(client, alice, "bye", "2024-06-01")
    assert client.delete("/api/user/profile", headers=alice).status_code == 200

    # Token is still signed correctly, but its subject is gone.
    r = client.get("/api/user/tasks", headers=alice)
    assert r.status_code == 401


# ---- Tasks ----


def test_task_crud(client: TestClient, auth_headers: dict) -> None:
    task = create_task(client, auth_headers, "Write report", "2024-06-10", description="Q2")
    assert task["status"] == "PENDING"
    assert task["priority"] == "MEDIUM"
    assert task["due_date"] == "2024-06-10T00:00:00.000000"

    r = client.get(f"/api/user/tasks/{task['id']}", headers=auth_headers)
    assert body(r)["data"]["title"] == "Write report"

    r = client.put(
        f"/api/user/tasks/{task['id']}",
        headers=auth_headers,
        json={"title": "Write final report", "priority": "HIGH", "dueDate": "2024-06-12"},
    )
    updated = body(r)["data"]
    assert updated["title"] == "Write final report"
    assert updated["priority"] == "HIGH"
    assert updated["description"] == "Q2"
    assert updated["due_date"].startswith("2024-06-12")

    r = client.patch(f"/api/user/tasks/{task['id']}/status", headers=auth_headers, json={"status": "COMPLETED"})
    assert body(r)["data"]["status"] == "COMPLETED"

    bad = client.patch(f"/api/user/tasks/{task['id']}/status", headers=auth_headers, json={"status": "DONE"})
    assert bad.status_code == 400

    assert client.delete(f"/api/user/tasks/{task['id']}", headers=auth_headers).status_code == 200
    r = client.get(f"/api/user/tasks/{task['id']}", headers=auth_headers)
    assert r.status_code == 404
    assert body(r)["error"] == "NotFound"


def test_create_task_requires_title_and_due_date(client: TestClient, auth_headers: dict) -> None:
    assert client.post("/api/user/tasks", headers=auth_headers, json={"title": "x"}).status_code == 400
    assert client.post("/api/user/tasks", headers=auth_headers, json={"dueDate": "2024-06-01"}).status_code == 400
    r = client.post("/api/user/tasks", headers=auth_headers, json={"title": "x", "dueDate": "someday"})
    assert r.status_code == 400


@pytest.fixture()
def june_tasks(client: TestClient, auth_headers: dict) -> dict[str, int]:
    ids = {}
    for due in ("2024-06-01", "2024-06-10", "2024-06-20", "2024-07-01"):
        ids[due] = create_task(client, auth_headers, f"due {due}", due)["id"]
    return ids


def listed(client: TestClient, headers: dict, **params) -> list[int]:
    r = client.get("/api/user/tasks", headers=headers, params=params)
    assert r.status_code == 200, r.text
    return sorted(t["id"] for t in body(r)["data"])


def test_list_filters_by_due_date(client: TestClient, auth_headers: dict, june_tasks: dict) -> None:
    h = auth_headers
    ids = june_tasks

    assert listed(client, h) == sorted(ids.values())
    assert listed(client, h, dueDate="2024-06-01") == [ids["2024-06-01"]]

    june = sorted([ids["2024-06-01"], ids["2024-06-10"], ids["2024-06-20"]])
    assert listed(client, h, fromDate="2024-06-01", toDate="2024-06-30") == june
    assert listed(client, h, fromDate="2024-06-01", toDate="2024-06-30", dueDate="2024-07-01") == june

    assert listed(client, h, fromDate="2024-06-01", beforeDate="2024-06-15") == sorted(
        [ids["2024-06-01"], ids["2024-06-10"]]
    )
    assert listed(client, h, afterDate="2024-06-10") == sorted([ids["2024-06-20"], ids["2024-07-01"]])

    # Exact date combined with a bound keeps the exact date.
    assert listed(client, h, dueDate="2024-06-10", beforeDate="2024-06-30") == [ids["2024-06-10"]]
    assert listed(client, h, dueDate="2024-06-10", afterDate="2024-06-15") == []


def test_empty_interval_matches_nothing(client: TestClient, auth_headers: dict, june_tasks: dict) -> None:
    r = client.get("/api/user/tasks", headers=auth_headers, params={"afterDate": "2024-06-01", "beforeDate": "2024-05-01"})
    payload = body(r)
    assert r.status_code == 200
    assert payload["data"] == []
    assert payload["error"] is None


def test_list_filters_by_status_and_priority(client: TestClient, auth_headers: dict) -> None:
    low = create_task(client, auth_headers, "low", "2024-06-01", priority="LOW")
    done = create_task(client, auth_headers, "done", "2024-06-02", status="COMPLETED")

    assert listed(client, auth_headers, priority="LOW") == [low["id"]]
    assert listed(client, auth_headers, status="COMPLETED") == [done["id"]]
    assert listed(client, auth_headers, status="IN_PROGRESS") == []


@pytest.mark.parametrize(
    ("params", "field"),
    [
        ({"status": "INVALID_VALUE"}, "status"),
        ({"priority": "URGENT"}, "priority"),
        ({"dueDate": "not-a-date"}, "dueDate"),
        ({"fromDate": "2024-06-01", "toDate": "bad"}, "toDate"),
        ({"beforeDate": "bad"}, "beforeDate"),
        ({"afterDate": "bad"}, "afterDate"),
    ],
)
def test_invalid_filter_is_rejected(client: TestClient, auth_headers: dict, params: dict, field: str) -> None:
    create_task(client, auth_headers, "t", "2024-06-01")
    r = client.get("/api/user/tasks", headers=auth_headers, params=params)
    payload = body(r)
    assert r.status_code == 400
    assert payload["error"] == "InvalidFilterValue"
    assert field in payload["message"]
    assert payload["data"] is None


def test_tasks_are_scoped_to_owner(client: TestClient, login) -> None:
    alice = login("alice")
    bob = login("bob")
    task = create_task(client, alice, "secret", "2024-06-01")

    assert listed(client, bob) == []
    assert client.get(f"/api/user/tasks/{task['id']}", headers=bob).status_code == 404
    assert client.put(f"/api/user/tasks/{task['id']}", headers=bob, json={"title": "mine"}).status_code == 404
    assert client.delete(f"/api/user/tasks/{task['id']}", headers=bob).status_code == 404
    assert listed(client, alice) == [task["id"]]


# ---- Categories and links ----


def test_category_crud(client: TestClient, auth_headers: dict) -> None:
    r = client.get("/api/user/category", headers=auth_headers)
    assert r.status_code == 200 and body(r)["data"] == []

    r = client.post("/api/user/category", headers=auth_headers, json={"name": "  Work  "})
    cat = body(r)["data"]
    assert r.status_code == 201 and cat["name"] == "Work"

    dup = client.post("/api/user/category", headers=auth_headers, json={"name": "Work"})
    assert dup.status_code == 400
    blank = client.post("/api/user/category", headers=auth_headers, json={"name": "   "})
    assert blank.status_code == 400

    r = client.put(f"/api/user/category/{cat['id']}", headers=auth_headers, json={"name": "Office"})
    assert body(r)["data"]["name"] == "Office"
    r = client.get(f"/api/user/category/{cat['id']}", headers=auth_headers)
    assert body(r)["data"]["name"] == "Office"

    assert client.delete(f"/api/user/category/{cat['id']}", headers=auth_headers).status_code == 200
    assert client.get(f"/api/user/category/{cat['id']}", headers=auth_headers).status_code == 404


def test_task_category_links(client: TestClient, login) -> None:
    alice = login("alice")
    bob = login("bob")
    task = create_task(client, alice, "Plan trip", "2024-06-01")
    other = create_task(client, alice, "Pack", "2024-06-02")
    cat = client.post("/api/user/category", headers=alice, json={"name": "Travel"}).json()["data"]
    bob_cat = client.post("/api/user/category", headers=bob, json={"name": "Travel"}).json()["data"]

    r = client.post("/api/user/task-categories", headers=alice, json={"taskId": task["id"], "categoryId": cat["id"]})
    link = body(r)["data"]
    assert r.status_code == 201

    again = client.post("/api/user/task-categories", headers=alice, json={"taskId": task["id"], "categoryId": cat["id"]})
    assert again.status_code == 400

    foreign = client.post(
        "/api/user/task-categories", headers=alice, json={"taskId": task["id"], "categoryId": bob_cat["id"]}
    )
    assert foreign.status_code == 404

    r = client.get(f"/api/user/{task['id']}/categories", headers=alice)
    assert body(r)["data"]["categories"] == ["Travel"]

    r = client.get(f"/api/user/{cat['id']}/tasks", headers=alice)
    assert [t["task_id"] for t in body(r)["data"]["tasks"]] == [task["id"]]

    r = client.get("/api/user/task-categories", headers=alice)
    summary = {item["task_title"]: item["categories"] for item in body(r)["data"]}
    assert summary == {"Plan trip": ["Travel"], "Pack": []}

    r = client.put(f"/api/user/task-categories/{link['id']}", headers=alice, json={"taskId": other["id"]})
    assert body(r)["data"]["task_id"] == other["id"]

    assert client.delete(f"/api/user/task-categories/{link['id']}", headers=bob).status_code == 404
    assert client.delete(f"/api/user/task-categories/{link['id']}", headers=alice).status_code == 200
    r = client.get(f"/api/user/{other['id']}/categories", headers=alice)
    assert body(r)["data"]["categories"] == []


def test_unknown_route_uses_envelope(client: TestClient) -> None:
    r = client.get("/api/nowhere")
    payload = body(r)
    assert r.status_code == 404
    assert payload["data"] is None


# ---- Edge input ----


@pytest.mark.parametrize(
    ("params", "field"),
    [
        ({"beforeDate": "9999-12-31T23:00:00-05:00"}, "beforeDate"),
        ({"dueDate": "0001-01-01T00:00:00+01:00"}, "dueDate"),
    ],
)
def test_out_of_range_filter_date_is_rejected(client: TestClient, auth_headers: dict, params: dict, field: str) -> None:
    r = client.get("/api/user/tasks", headers=auth_headers, params=params)
    payload = body(r)
    assert r.status_code == 400
    assert payload["error"] == "InvalidFilterValue"
    assert field in payload["message"]


@pytest.mark.parametrize("due", ["9999-12-31T23:00:00-05:00", "0001-01-01T00:00:00+01:00"])
def test_out_of_range_due_date_on_create_is_rejected(client: TestClient, auth_headers: dict, due: str) -> None:
    r = client.post("/api/user/tasks", headers=auth_headers, json={"title": "x", "dueDate": due})
    assert r.status_code == 400
    assert body(r)["error"] == "ValidationError"


def test_bound_before_year_1000_excludes_modern_tasks(client: TestClient, auth_headers: dict) -> None:
    ancient = create_task(client, auth_headers, "ancient", "0998-05-01")
    create_task(client, auth_headers, "modern", "2024-06-01")

    assert listed(client, auth_headers, beforeDate="0999-01-01") == [ancient["id"]]
    assert ancient["due_date"] == "0998-05-01T00:00:00.000000"


@pytest.mark.parametrize(
    "path",
    [
        "/api/user/tasks/99999999999999999999",
        "/api/user/tasks/0",
        "/api/user/category/99999999999999999999",
        "/api/user/99999999999999999999/categories",
    ],
)
def test_out_of_range_ids_are_rejected(client: TestClient, auth_headers: dict, path: str) -> None:
    r = client.get(path, headers=auth_headers)
    assert r.status_code == 400
    assert body(r)["error"] == "ValidationError"


def test_out_of_range_link_ids_are_rejected(client: TestClient, auth_headers: dict) -> None:
    huge = 2**63
    r = client.post("/api/user/task-categories", headers=auth_headers, json={"taskId": huge, "categoryId": 1})
    assert r.status_code == 400
    r = client.delete(f"/api/user/task-categories/{huge}", headers=auth_headers)
    assert r.status_code == 400


# ---- Blocking work and timeouts ----


def test_password_hashing_runs_off_event_loop(app: FastAPI, client: TestClient, monkeypatch) -> None:
    @app.get("/loop-thread")
    async def loop_thread():
        return {"ident": threading.get_ident()}

    seen: list[int] = []

    def hash_password(password, salt=None):
        seen.append(threading.get_ident())
        return security.hash_password(password, salt)

    def verify_password(password, stored_hash, salt):
        seen.append(threading.get_ident())
        return security.verify_password(password, stored_hash, salt)

    monkeypatch.setattr(main, "hash_password", hash_password)
    monkeypatch.setattr(main, "verify_password", verify_password)

    loop_ident = client.get("/loop-thread").json()["ident"]
    client.post("/api/auth/register", json={"username": "dave", "email": "dave@example.com", "password": PASSWORD})
    r = client.post("/api/auth/login", json={"username": "dave", "password": PASSWORD})
    headers = {"Authorization": f"Bearer {r.json()['data']['token']}"}
    client.put(
        "/api/user/profile",
        headers=headers,
        json={"username": "dave", "email": "dave@example.com", "password": "N3w!passw0rd"},
    )

    assert len(seen) == 3
    assert loop_ident not in seen


def test_slow_store_read_is_gateway_timeout(
    app: FastAPI, client: TestClient, settings: Settings, auth_headers: dict
) -> None:
    app.state.task_queries = TaskQueryHandler(SlowStore(settings.db_path), timeout=0.01)

    r = client.get("/api/user/tasks", headers=auth_headers)
    payload = body(r)
    assert r.status_code == 504
    assert payload["error"] == "Timeout"
    assert payload["data"] is None


def test_modules_run_from_source_tree() -> None:
    assert Path(main.__file__).resolve().parent.name == "backend"

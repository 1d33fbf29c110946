# tests/test_tasks.py — Task visibility, sharing, pagination and status workflow
import pytest
from httpx import AsyncClient

import permissions
from models import TaskStatus, can_transition, TASK_STATUS_TRANSITIONS
from tests.conftest import get_auth_headers


async def _create_task(client, headers, **fields):
    body = {"title": "Write report", **fields}
    res = await client.post("/api/tasks", headers=headers, json=body)
    assert res.status_code == 201, res.text
    return res.json()


# ============================================================
# VISIBILITY
# ============================================================

@pytest.mark.asyncio
async def test_task_hidden_until_shared(client: AsyncClient, db_session, test_user, other_user):
    """A task created by A is absent from B's list until A shares it"""
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)

    task = await _create_task(client, alice, title="Private plan")

    listing = (await client.get("/api/tasks", headers=bob)).json()
    assert listing["total"] == 0
    assert (await client.get(f"/api/tasks/{task['id']}", headers=bob)).status_code == 404

    res = await client.put(f"/api/tasks/{task['id']}/share", headers=alice, json={"user_ids": [other_user.id]})
    assert res.status_code == 200
    assert res.json()["shared_with"] == [other_user.id]

    listing = (await client.get("/api/tasks", headers=bob)).json()
    assert [t["id"] for t in listing["tasks"]] == [task["id"]]
    assert (await client.get(f"/api/tasks/{task['id']}", headers=bob)).status_code == 200


@pytest.mark.asyncio
async def test_assignee_can_see_task(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice, assignee_id=other_user.id)

    res = await client.get(f"/api/tasks/{task['id']}", headers=bob)
    assert res.status_code == 200
    data = res.json()
    assert data["assignee"] == {"id": other_user.id, "name": "Bob Member", "email": "bob@taskhub.dev"}
    assert data["creator"]["id"] == test_user.id


@pytest.mark.asyncio
async def test_unshare_hides_task_again(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice, shared_with=[other_user.id])
    assert (await client.get("/api/tasks/all", headers=bob)).json()[0]["id"] == task["id"]

    await client.put(f"/api/tasks/{task['id']}/share", headers=alice, json={"user_ids": []})
    assert (await client.get("/api/tasks/all", headers=bob)).json() == []


@pytest.mark.asyncio
async def test_share_with_unknown_user(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    res = await client.put(f"/api/tasks/{task['id']}/share", headers=alice, json={"user_ids": ["ghost"]})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_share_collapses_duplicates(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    res = await client.put(
        f"/api/tasks/{task['id']}/share", headers=alice,
        json={"user_ids": [other_user.id, other_user.id]},
    )
    assert res.json()["shared_with"] == [other_user.id]


@pytest.mark.asyncio
async def test_outsider_cannot_share_or_update(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice)

    share = await client.put(f"/api/tasks/{task['id']}/share", headers=bob, json={"user_ids": [other_user.id]})
    update = await client.patch(f"/api/tasks/{task['id']}", headers=bob, json={"title": "Hijacked"})
    assert share.status_code == 404
    assert update.status_code == 404


# ============================================================
# PAGINATION
# ============================================================

@pytest.mark.asyncio
async def test_pagination_envelope(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    for i in range(5):
        await _create_task(client, alice, title=f"Task {i}")

    res = await client.get("/api/tasks", headers=alice, params={"page": 2, "limit": 2, "sortBy": "title", "sortOrder": "asc"})
    assert res.status_code == 200
    data = res.json()
    assert data["total"] == 5
    assert data["page"] == 2
    assert data["totalPages"] == 3
    assert [t["title"] for t in data["tasks"]] == ["Task 2", "Task 3"]


@pytest.mark.asyncio
async def test_pagination_defaults(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    for i in range(12):
        await _create_task(client, alice, title=f"Task {i:02d}")

    data = (await client.get("/api/tasks", headers=alice)).json()
    assert data["page"] == 1
    assert len(data["tasks"]) == 10
    assert data["totalPages"] == 2


@pytest.mark.asyncio
async def test_sort_by_priority_follows_urgency(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    for priority in ("high", "low", "medium"):
        await _create_task(client, alice, title=priority, priority=priority)

    asc = (await client.get("/api/tasks", headers=alice, params={"sortBy": "priority", "sortOrder": "asc"})).json()
    assert [t["priority"] for t in asc["tasks"]] == ["low", "medium", "high"]
    desc = (await client.get("/api/tasks", headers=alice, params={"sortBy": "priority", "sortOrder": "desc"})).json()
    assert [t["priority"] for t in desc["tasks"]] == ["high", "medium", "low"]


@pytest.mark.asyncio
async def test_sort_by_status_follows_workflow(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    for status in ("review", "todo", "completed", "in_progress"):
        await _create_task(client, alice, title=status, status=status)

    data = (await client.get("/api/tasks", headers=alice, params={"sortBy": "status", "sortOrder": "asc"})).json()
    assert [t["status"] for t in data["tasks"]] == ["todo", "in_progress", "review", "completed"]


@pytest.mark.asyncio
async def test_empty_listing(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    data = (await client.get("/api/tasks", headers=alice)).json()
    assert data == {"tasks": [], "total": 0, "page": 1, "totalPages": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [
    {"page": 0},
    {"limit": 0},
    {"limit": 101},
    {"sortBy": "password"},
    {"sortOrder": "sideways"},
    {"status": "archived"},
])
async def test_invalid_query_is_400(client: AsyncClient, db_session, test_user, params):
    alice = await get_auth_headers(db_session, test_user)
    res = await client.get("/api/tasks", headers=alice, params=params)
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_filters(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    project = (await client.post("/api/projects", headers=alice, json={"name": "Launch"})).json()
    await _create_task(client, alice, title="In project", project_id=project["id"])
    await _create_task(client, alice, title="Assigned", assignee_id=other_user.id)
    await _create_task(client, alice, title="Done", status="completed")

    by_project = (await client.get("/api/tasks", headers=alice, params={"projectId": project["id"]})).json()
    by_assignee = (await client.get("/api/tasks", headers=alice, params={"assigneeId": other_user.id})).json()
    by_status = (await client.get("/api/tasks", headers=alice, params={"status": "completed"})).json()
    assert [t["title"] for t in by_project["tasks"]] == ["In project"]
    assert [t["title"] for t in by_assignee["tasks"]] == ["Assigned"]
    assert [t["title"] for t in by_status["tasks"]] == ["Done"]


# ============================================================
# CRUD + STATUS
# ============================================================

@pytest.mark.asyncio
async def test_create_task_defaults(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    assert task["status"] == "todo"
    assert task["priority"] == "medium"
    assert task["creator_id"] == test_user.id
    assert task["completed_at"] is None
    assert task["version"] == 1


@pytest.mark.asyncio
async def test_create_task_unknown_assignee(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    res = await client.post("/api/tasks", headers=alice, json={"title": "X", "assignee_id": "ghost"})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_status_workflow(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    url = f"/api/tasks/{task['id']}"

    res = await client.patch(url, headers=alice, json={"status": "in_progress"})
    assert res.json()["status"] == "in_progress"

    res = await client.patch(url, headers=alice, json={"status": "completed"})
    assert res.json()["completed_at"] is not None

    res = await client.patch(url, headers=alice, json={"status": "in_progress"})
    assert res.json()["status"] == "in_progress"
    assert res.json()["completed_at"] is None


@pytest.mark.asyncio
async def test_illegal_transition_is_409(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    res = await client.patch(f"/api/tasks/{task['id']}", headers=alice, json={"status": "review"})
    assert res.status_code == 409


def test_transition_table_covers_every_status():
    assert set(TASK_STATUS_TRANSITIONS) == set(TaskStatus)
    for status in TaskStatus:
        assert can_transition(status, status)
    assert not can_transition(TaskStatus.TODO, TaskStatus.REVIEW)
    assert not can_transition(TaskStatus.COMPLETED, TaskStatus.TODO)


@pytest.mark.asyncio
async def test_stale_version_is_409(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    url = f"/api/tasks/{task['id']}"

    first = await client.patch(url, headers=alice, json={"title": "First", "version": 1})
    assert first.status_code == 200
    assert first.json()["version"] == 2

    second = await client.patch(url, headers=alice, json={"title": "Second", "version": 1})
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_patch_can_clear_assignee(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice, assignee_id=other_user.id)
    res = await client.patch(f"/api/tasks/{task['id']}", headers=alice, json={"assignee_id": None})
    assert res.json()["assignee_id"] is None
    assert res.json()["assignee"] is None


@pytest.mark.asyncio
async def test_delete_by_creator(client: AsyncClient, db_session, test_user):
    alice = await get_auth_headers(db_session, test_user)
    task = await _create_task(client, alice)
    res = await client.delete(f"/api/tasks/{task['id']}", headers=alice)
    assert res.status_code == 200
    assert (await client.get(f"/api/tasks/{task['id']}", headers=alice)).status_code == 404


@pytest.mark.asyncio
async def test_delete_by_shared_user_forbidden(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice, shared_with=[other_user.id])
    res = await client.delete(f"/api/tasks/{task['id']}", headers=bob)
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_delete_open_when_ownership_not_enforced(
    client: AsyncClient, db_session, test_user, other_user, monkeypatch,
):
    monkeypatch.setattr(permissions.settings, "ENFORCE_DELETE_OWNERSHIP", False)
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice, shared_with=[other_user.id])
    res = await client.delete(f"/api/tasks/{task['id']}", headers=bob)
    assert res.status_code == 200


@pytest.mark.asyncio
async def test_admin_deletes_private_task(client: AsyncClient, db_session, test_user, admin_user):
    alice = await get_auth_headers(db_session, test_user)
    admin = await get_auth_headers(db_session, admin_user)
    task = await _create_task(client, alice, title="Private notes")

    # admins cannot read it, but may still delete it
    assert (await client.get(f"/api/tasks/{task['id']}", headers=admin)).status_code == 404
    res = await client.delete(f"/api/tasks/{task['id']}", headers=admin)
    assert res.status_code == 200
    assert (await client.get(f"/api/tasks/{task['id']}", headers=alice)).status_code == 404


@pytest.mark.asyncio
async def test_delete_invisible_task_is_404(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice)
    assert (await client.delete(f"/api/tasks/{task['id']}", headers=bob)).status_code == 404
    assert (await client.get(f"/api/tasks/{task['id']}", headers=alice)).status_code == 200


@pytest.mark.asyncio
async def test_delete_missing_task_is_404(client: AsyncClient, db_session, admin_user):
    admin = await get_auth_headers(db_session, admin_user)
    assert (await client.delete("/api/tasks/no-such-task", headers=admin)).status_code == 404


@pytest.mark.asyncio
async def test_open_delete_reaches_unshared_task(
    client: AsyncClient, db_session, test_user, other_user, monkeypatch,
):
    monkeypatch.setattr(permissions.settings, "ENFORCE_DELETE_OWNERSHIP", False)
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice)
    res = await client.delete(f"/api/tasks/{task['id']}", headers=bob)
    assert res.status_code == 200
    assert (await client.get(f"/api/tasks/{task['id']}", headers=alice)).status_code == 404


# ============================================================
# COMMENTS
# ============================================================

@pytest.mark.asyncio
async def test_comments(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice, shared_with=[other_user.id])
    url = f"/api/tasks/{task['id']}/comments"

    res = await client.post(url, headers=bob, json={"content": "Looks good"})
    assert res.status_code == 201
    comment = res.json()
    assert comment["author_name"] == "Bob Member"

    listing = (await client.get(url, headers=alice)).json()
    assert [c["content"] for c in listing] == ["Looks good"]

    # not the author, not an admin
    assert (await client.delete(f"{url}/{comment['id']}", headers=alice)).status_code == 403
    assert (await client.delete(f"{url}/{comment['id']}", headers=bob)).status_code == 200


@pytest.mark.asyncio
async def test_comments_on_invisible_task(client: AsyncClient, db_session, test_user, other_user):
    alice = await get_auth_headers(db_session, test_user)
    bob = await get_auth_headers(db_session, other_user)
    task = await _create_task(client, alice)
    res = await client.post(f"/api/tasks/{task['id']}/comments", headers=bob, json={"content": "Hi"})
    assert res.status_code == 404

# permissions.py — Ownership and visibility rules for tasks and projects
# - A task is visible to its creator, its assignee and everyone on its share list
# - Invisible tasks are reported as missing, never as forbidden
# - Projects: owner/member/admin may edit, owner/admin manage members and delete

from typing import Iterable, List

from fastapi import HTTPException
from sqlalchemy import select, delete, insert, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from config import get_settings
from models import Task, Project, User, task_shares, project_members

settings = get_settings()

FORBIDDEN = "Forbidden: insufficient permissions"


# ============================================================
# TASKS
# ============================================================

def task_visible_to(user_id: str):
    """SQL predicate: the task is visible to ``user_id``."""
    shared_ids = select(task_shares.c.task_id).where(task_shares.c.user_id == user_id)
    return or_(
        Task.creator_id == user_id,
        Task.assignee_id == user_id,
        Task.id.in_(shared_ids),
    )


async def get_visible_task(db: AsyncSession, task_id: str, user: CurrentUser) -> Task:
    stmt = select(Task).where(Task.id == task_id, task_visible_to(user.id))
    task = (await db.execute(stmt)).scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def can_delete_task(task: Task, user: CurrentUser) -> bool:
    if not settings.ENFORCE_DELETE_OWNERSHIP:
        return True
    return user.is_admin or task.creator_id == user.id


async def get_deletable_task(db: AsyncSession, task_id: str, user: CurrentUser) -> Task:
    """Load a task for deletion by id alone.

    Admins, and everyone when ownership is not enforced, may delete tasks they
    cannot see. Other callers get 404 for invisible tasks and 403 unless they
    created the task.
    """
    task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if settings.ENFORCE_DELETE_OWNERSHIP and not user.is_admin:
        visible = select(Task.id).where(Task.id == task_id, task_visible_to(user.id))
        if (await db.execute(visible)).first() is None:
            raise HTTPException(status_code=404, detail="Task not found")
    if not can_delete_task(task, user):
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    return task


async def share_ids_for(db: AsyncSession, task_ids: Iterable[str]) -> dict:
    """Map task id -> list of user ids it is shared with."""
    task_ids = list(task_ids)
    shares = {tid: [] for tid in task_ids}
    if not task_ids:
        return shares
    stmt = (
        select(task_shares.c.task_id, task_shares.c.user_id)
        .where(task_shares.c.task_id.in_(task_ids))
        .order_by(task_shares.c.user_id)
    )
    for task_id, user_id in (await db.execute(stmt)).all():
        shares[task_id].append(user_id)
    return shares


async def replace_shares(db: AsyncSession, task_id: str, user_ids: Iterable[str]) -> List[str]:
    """Overwrite the share list of a task. Unknown users -> 400. Caller commits."""
    wanted = list(dict.fromkeys(uid for uid in user_ids if uid))
    if wanted:
        found = set((await db.execute(select(User.id).where(User.id.in_(wanted)))).scalars().all())
        missing = [uid for uid in wanted if uid not in found]
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown user id(s): {', '.join(missing)}")

    await db.execute(delete(task_shares).where(task_shares.c.task_id == task_id))
    if wanted:
        await db.execute(
            insert(task_shares),
            [{"task_id": task_id, "user_id": uid} for uid in wanted],
        )
    return wanted


# ============================================================
# PROJECTS
# ============================================================

async def get_project_or_404(db: AsyncSession, project_id: str) -> Project:
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def is_project_member(db: AsyncSession, project_id: str, user_id: str) -> bool:
    stmt = select(project_members.c.user_id).where(
        and_(project_members.c.project_id == project_id, project_members.c.user_id == user_id)
    )
    return (await db.execute(stmt)).first() is not None


async def ensure_can_update_project(db: AsyncSession, project: Project, user: CurrentUser) -> None:
    if user.is_admin or project.owner_id == user.id:
        return
    if await is_project_member(db, project.id, user.id):
        return
    raise HTTPException(status_code=403, detail=FORBIDDEN)


def ensure_can_manage_project(project: Project, user: CurrentUser) -> None:
    if not (user.is_admin or project.owner_id == user.id):
        raise HTTPException(status_code=403, detail=FORBIDDEN)


def ensure_can_delete_project(project: Project, user: CurrentUser) -> None:
    if settings.ENFORCE_DELETE_OWNERSHIP:
        ensure_can_manage_project(project, user)


def projects_involving(user_id: str):
    """SQL predicate: the project is owned by ``user_id`` or has them as member."""
    member_of = select(project_members.c.project_id).where(project_members.c.user_id == user_id)
    return or_(Project.owner_id == user_id, Project.id.in_(member_of))

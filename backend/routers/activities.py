# routers/activities.py — Activity feed for tasks, projects and comments
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_admin, CurrentUser
from database import get_db_session
from models import Activity, ActivityAction, Project, Task, User
from permissions import task_visible_to, projects_involving

router = APIRouter(prefix="/api/activities", tags=["Activities"])


class ActivityOut(BaseModel):
    id: str
    action: str
    description: str
    user_id: str
    user_name: Optional[str] = None
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    created_at: Optional[str] = None


def record_activity(
    db: AsyncSession,
    user_id: str,
    action: ActivityAction,
    description: str,
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
):
    """Queue an activity entry; committed with the caller's transaction."""
    db.add(Activity(
        action=action,
        description=description,
        user_id=user_id,
        project_id=project_id,
        task_id=task_id,
    ))


@router.get("", response_model=List[ActivityOut])
async def list_activities(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=20, ge=1, le=100),
):
    """Most recent activities the caller is allowed to see"""
    stmt = (
        select(Activity, User.name)
        .join(User, User.id == Activity.user_id)
        .order_by(Activity.created_at.desc(), Activity.id)
        .limit(limit)
    )
    if not user.is_admin:
        visible_tasks = select(Task.id).where(task_visible_to(user.id))
        visible_projects = select(Project.id).where(projects_involving(user.id))
        stmt = stmt.where(or_(
            Activity.user_id == user.id,
            Activity.task_id.in_(visible_tasks),
            # project-level entries only; task entries follow the task's visibility
            and_(Activity.task_id.is_(None), Activity.project_id.in_(visible_projects)),
        ))

    rows = (await db.execute(stmt)).all()
    return [
        ActivityOut(
            id=a.id,
            action=a.action.value if isinstance(a.action, ActivityAction) else a.action,
            description=a.description,
            user_id=a.user_id,
            user_name=name,
            project_id=a.project_id,
            task_id=a.task_id,
            created_at=a.created_at.isoformat() if a.created_at else None,
        )
        for a, name in rows
    ]


@router.delete("/{activity_id}")
async def delete_activity(
    activity_id: str,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove an activity entry (admin only)"""
    activity = (await db.execute(select(Activity).where(Activity.id == activity_id))).scalar_one_or_none()
    if not activity:
        raise HTTPException(status_code=404, detail="Activity not found")
    await db.delete(activity)
    await db.commit()
    return {"status": "deleted", "activity_id": activity_id}

# routers/projects.py — Projects, project membership and ownership checks
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, delete, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser, UserOut, user_to_out
from database import get_db_session
from models import Project, ProjectStatus, Task, User, ActivityAction, project_members
from permissions import (
    get_project_or_404, is_project_member, projects_involving,
    ensure_can_update_project, ensure_can_manage_project, ensure_can_delete_project,
)
from routers.activities import record_activity
from routers.common import ts, commit_or_conflict

logger = logging.getLogger("taskhub.projects")

router = APIRouter(prefix="/api/projects", tags=["Projects"])

CONFLICT = "Project was modified by someone else; reload and try again"


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.PLANNING
    deadline: Optional[datetime] = None
    member_ids: List[str] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    deadline: Optional[datetime] = None
    version: Optional[int] = None


class MemberAdd(BaseModel):
    user_id: str


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: str
    deadline: Optional[str] = None
    owner_id: str
    member_ids: List[str] = []
    task_count: int = 0
    completed_task_count: int = 0
    version: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

async def _projects_to_out(projects: List[Project], db: AsyncSession) -> List[ProjectOut]:
    """Serialize projects with member lists and task counts, batched."""
    project_ids = [p.id for p in projects]
    members = {pid: [] for pid in project_ids}
    counts = {}
    if project_ids:
        rows = (await db.execute(
            select(project_members.c.project_id, project_members.c.user_id)
            .where(project_members.c.project_id.in_(project_ids))
            .order_by(project_members.c.added_at, project_members.c.user_id)
        )).all()
        for project_id, user_id in rows:
            members[project_id].append(user_id)

        rows = (await db.execute(
            select(
                Task.project_id,
                func.count(Task.id),
                func.count(Task.completed_at),
            )
            .where(Task.project_id.in_(project_ids))
            .group_by(Task.project_id)
        )).all()
        counts = {project_id: (total, done) for project_id, total, done in rows}

    return [
        ProjectOut(
            id=p.id,
            name=p.name,
            description=p.description,
            status=p.status.value if isinstance(p.status, ProjectStatus) else p.status,
            deadline=ts(p.deadline),
            owner_id=p.owner_id,
            member_ids=members[p.id],
            task_count=counts.get(p.id, (0, 0))[0],
            completed_task_count=counts.get(p.id, (0, 0))[1],
            version=p.version,
            created_at=ts(p.created_at),
            updated_at=ts(p.updated_at),
        )
        for p in projects
    ]


async def _project_to_out(project: Project, db: AsyncSession) -> ProjectOut:
    return (await _projects_to_out([project], db))[0]


async def _add_member(db: AsyncSession, project_id: str, user_id: str) -> bool:
    """Insert a membership row; returns False when it already exists."""
    if await is_project_member(db, project_id, user_id):
        return False
    await db.execute(insert(project_members).values(project_id=project_id, user_id=user_id))
    return True


# ============================================================
# PROJECT ENDPOINTS
# ============================================================

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    user_id: Optional[str] = Query(default=None, alias="userId"),
):
    """List projects; ``userId`` narrows to projects that user owns or belongs to"""
    stmt = select(Project).order_by(Project.created_at.desc(), Project.id)
    if user_id:
        stmt = stmt.where(projects_involving(user_id))
    projects = (await db.execute(stmt)).scalars().all()
    return await _projects_to_out(projects, db)


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project owned by the caller"""
    member_ids = list(dict.fromkeys(m for m in data.member_ids if m and m != user.id))
    if member_ids:
        found = set((await db.execute(select(User.id).where(User.id.in_(member_ids)))).scalars().all())
        missing = [m for m in member_ids if m not in found]
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown user id(s): {', '.join(missing)}")

    project = Project(
        name=data.name,
        description=data.description,
        status=data.status,
        deadline=data.deadline,
        owner_id=user.id,
    )
    db.add(project)
    await db.flush()

    for member_id in member_ids:
        await _add_member(db, project.id, member_id)

    record_activity(
        db, user.id, ActivityAction.PROJECT_CREATED,
        f"{user.name} created project \"{project.name}\"",
        project_id=project.id,
    )
    await db.commit()
    await db.refresh(project)
    logger.info(f"Project {project.id} created by {user.id}")
    return await _project_to_out(project, db)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a single project"""
    project = await get_project_or_404(db, project_id)
    return await _project_to_out(project, db)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a project (owner, member or admin)"""
    project = await get_project_or_404(db, project_id)
    await ensure_can_update_project(db, project, user)

    if data.version is not None and data.version != project.version:
        raise HTTPException(status_code=409, detail=CONFLICT)

    fields = data.model_dump(exclude_unset=True)
    if fields.get("name") is not None:
        project.name = fields["name"]
    if fields.get("status") is not None:
        project.status = fields["status"]
    if "description" in fields:
        project.description = fields["description"] or None
    if "deadline" in fields:
        project.deadline = fields["deadline"]

    record_activity(
        db, user.id, ActivityAction.PROJECT_UPDATED,
        f"{user.name} updated project \"{project.name}\"",
        project_id=project.id,
    )
    await commit_or_conflict(db, CONFLICT)
    await db.refresh(project)
    return await _project_to_out(project, db)


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project; its tasks are kept and detached"""
    project = await get_project_or_404(db, project_id)
    ensure_can_delete_project(project, user)

    await db.execute(
        update(Task).where(Task.project_id == project_id)
        .values(project_id=None, version=Task.version + 1)
    )
    await db.execute(delete(project_members).where(project_members.c.project_id == project_id))
    record_activity(
        db, user.id, ActivityAction.PROJECT_DELETED,
        f"{user.name} deleted project \"{project.name}\"",
        project_id=project_id,
    )
    await db.delete(project)
    await commit_or_conflict(db, CONFLICT)
    logger.info(f"Project {project_id} deleted by {user.id}")
    return {"status": "deleted", "project_id": project_id}


# ============================================================
# MEMBERSHIP ENDPOINTS
# ============================================================

@router.get("/{project_id}/members", response_model=List[UserOut])
async def list_members(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List the members of a project"""
    await get_project_or_404(db, project_id)
    stmt = (
        select(User)
        .join(project_members, project_members.c.user_id == User.id)
        .where(project_members.c.project_id == project_id)
        .order_by(User.name.asc(), User.id)
    )
    members = (await db.execute(stmt)).scalars().all()
    return [user_to_out(m) for m in members]


@router.post("/{project_id}/members", response_model=ProjectOut, status_code=201)
async def add_member(
    project_id: str,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a member to a project (owner or admin)"""
    project = await get_project_or_404(db, project_id)
    ensure_can_manage_project(project, user)

    member = (await db.execute(select(User).where(User.id == data.user_id))).scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=400, detail="User not found")
    if not await _add_member(db, project_id, member.id):
        raise HTTPException(status_code=409, detail="User is already a member of this project")

    record_activity(
        db, user.id, ActivityAction.MEMBER_ADDED,
        f"{user.name} added {member.name} to \"{project.name}\"",
        project_id=project_id,
    )
    await db.commit()
    return await _project_to_out(project, db)


@router.delete("/{project_id}/members/{member_id}")
async def remove_member(
    project_id: str,
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member from a project (owner or admin)"""
    project = await get_project_or_404(db, project_id)
    ensure_can_manage_project(project, user)

    result = await db.execute(
        delete(project_members).where(
            project_members.c.project_id == project_id,
            project_members.c.user_id == member_id,
        )
    )
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Member not found")

    record_activity(
        db, user.id, ActivityAction.MEMBER_REMOVED,
        f"{user.name} removed a member from \"{project.name}\"",
        project_id=project_id,
    )
    await db.commit()
    return {"status": "removed", "project_id": project_id, "user_id": member_id}

# routers/tasks.py — Tasks with visibility rules, sharing, comments and status workflow
import logging
import math
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, delete, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import (
    Task, Comment, User, Project, TaskStatus, TaskPriority, ActivityAction,
    can_transition, utcnow,
)
from permissions import (
    task_visible_to, get_visible_task, get_deletable_task, share_ids_for,
    replace_shares,
)
from routers.activities import record_activity
from routers.common import ts, commit_or_conflict

logger = logging.getLogger("taskhub.tasks")

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])

# Enum columns sort by workflow order, not by stored name
STATUS_RANK = case(
    (Task.status == TaskStatus.TODO, 0),
    (Task.status == TaskStatus.IN_PROGRESS, 1),
    (Task.status == TaskStatus.REVIEW, 2),
    (Task.status == TaskStatus.COMPLETED, 3),
)
PRIORITY_RANK = case(
    (Task.priority == TaskPriority.LOW, 0),
    (Task.priority == TaskPriority.MEDIUM, 1),
    (Task.priority == TaskPriority.HIGH, 2),
)

# Accepted sortBy values (camelCase from the web client, snake_case too)
SORT_COLUMNS = {
    "createdAt": Task.created_at,
    "updatedAt": Task.updated_at,
    "deadline": Task.deadline,
    "title": Task.title,
    "status": STATUS_RANK,
    "priority": PRIORITY_RANK,
    "created_at": Task.created_at,
    "updated_at": Task.updated_at,
}

CONFLICT = "Task was modified by someone else; reload and try again"


# ============================================================
# SCHEMAS
# ============================================================

class UserSummary(BaseModel):
    id: str
    name: str
    email: str


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[datetime] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    shared_with: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    deadline: Optional[datetime] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    shared_with: Optional[List[str]] = None
    version: Optional[int] = None


class TaskShare(BaseModel):
    user_ids: List[str]


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    deadline: Optional[str] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    creator_id: str
    creator: Optional[UserSummary] = None
    assignee: Optional[UserSummary] = None
    shared_with: List[str] = []
    completed_at: Optional[str] = None
    version: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TaskPage(BaseModel):
    tasks: List[TaskOut]
    total: int
    page: int
    totalPages: int


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class CommentOut(BaseModel):
    id: str
    task_id: str
    user_id: str
    author_name: str
    content: str
    created_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _enum_value(value) -> str:
    return value.value if hasattr(value, "value") else value


async def _tasks_to_out(tasks: List[Task], db: AsyncSession) -> List[TaskOut]:
    """Serialize tasks with creator/assignee summaries and share lists."""
    user_ids = {t.creator_id for t in tasks} | {t.assignee_id for t in tasks if t.assignee_id}
    people = {}
    if user_ids:
        rows = (await db.execute(
            select(User.id, User.name, User.email).where(User.id.in_(user_ids))
        )).all()
        people = {uid: UserSummary(id=uid, name=name, email=email) for uid, name, email in rows}
    shares = await share_ids_for(db, [t.id for t in tasks])

    return [
        TaskOut(
            id=t.id,
            title=t.title,
            description=t.description,
            status=_enum_value(t.status),
            priority=_enum_value(t.priority),
            deadline=ts(t.deadline),
            project_id=t.project_id,
            assignee_id=t.assignee_id,
            creator_id=t.creator_id,
            creator=people.get(t.creator_id),
            assignee=people.get(t.assignee_id) if t.assignee_id else None,
            shared_with=shares.get(t.id, []),
            completed_at=ts(t.completed_at),
            version=t.version,
            created_at=ts(t.created_at),
            updated_at=ts(t.updated_at),
        )
        for t in tasks
    ]


async def _task_to_out(task: Task, db: AsyncSession) -> TaskOut:
    return (await _tasks_to_out([task], db))[0]


async def _check_references(db: AsyncSession, project_id: Optional[str], assignee_id: Optional[str]):
    if project_id:
        found = (await db.execute(select(Project.id).where(Project.id == project_id))).first()
        if not found:
            raise HTTPException(status_code=400, detail="Project not found")
    if assignee_id:
        found = (await db.execute(select(User.id).where(User.id == assignee_id))).first()
        if not found:
            raise HTTPException(status_code=400, detail="Assignee not found")


def _apply_status(task: Task, new_status: TaskStatus) -> bool:
    """Move the task to ``new_status``; returns True when the status changed."""
    current = TaskStatus(task.status)
    if not can_transition(current, new_status):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move task from {current.value} to {new_status.value}",
        )
    if current == new_status:
        return False
    task.status = new_status
    if new_status == TaskStatus.COMPLETED:
        task.completed_at = utcnow()
    elif current == TaskStatus.COMPLETED:
        task.completed_at = None
    return True


# ============================================================
# TASK ENDPOINTS
# ============================================================

@router.get("", response_model=TaskPage)
async def list_tasks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    assignee_id: Optional[str] = Query(default=None, alias="assigneeId"),
    status: Optional[TaskStatus] = None,
):
    """Paginated list of the tasks visible to the caller"""
    column = SORT_COLUMNS.get(sort_by)
    if column is None:
        raise HTTPException(status_code=400, detail=f"Invalid sortBy: {sort_by}")
    if sort_order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail=f"Invalid sortOrder: {sort_order}")

    filters = [task_visible_to(user.id)]
    if project_id:
        filters.append(Task.project_id == project_id)
    if assignee_id:
        filters.append(Task.assignee_id == assignee_id)
    if status:
        filters.append(Task.status == status)

    total = (await db.execute(select(func.count(Task.id)).where(*filters))).scalar() or 0

    order = column.asc() if sort_order == "asc" else column.desc()
    stmt = (
        select(Task)
        .where(*filters)
        .order_by(order, Task.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    tasks = (await db.execute(stmt)).scalars().all()

    return TaskPage(
        tasks=await _tasks_to_out(list(tasks), db),
        total=total,
        page=page,
        totalPages=math.ceil(total / limit),
    )


@router.get("/all", response_model=List[TaskOut])
async def list_all_tasks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Every task visible to the caller, newest first"""
    stmt = select(Task).where(task_visible_to(user.id)).order_by(Task.created_at.desc(), Task.id)
    tasks = (await db.execute(stmt)).scalars().all()
    return await _tasks_to_out(list(tasks), db)


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task owned by the caller"""
    await _check_references(db, data.project_id, data.assignee_id)

    task = Task(
        title=data.title,
        description=data.description,
        status=data.status,
        priority=data.priority,
        deadline=data.deadline,
        project_id=data.project_id,
        assignee_id=data.assignee_id,
        creator_id=user.id,
        completed_at=utcnow() if data.status == TaskStatus.COMPLETED else None,
    )
    db.add(task)
    await db.flush()

    if data.shared_with:
        await replace_shares(db, task.id, data.shared_with)

    record_activity(
        db, user.id, ActivityAction.TASK_CREATED,
        f"{user.name} created task \"{task.title}\"",
        project_id=task.project_id, task_id=task.id,
    )
    await db.commit()
    await db.refresh(task)
    logger.info(f"Task {task.id} created by {user.id}")
    return await _task_to_out(task, db)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a single visible task"""
    task = await get_visible_task(db, task_id, user)
    return await _task_to_out(task, db)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update task fields; ``version`` enables a stale-write check"""
    task = await get_visible_task(db, task_id, user)
    fields = data.model_dump(exclude_unset=True)

    if data.version is not None and data.version != task.version:
        raise HTTPException(status_code=409, detail=CONFLICT)

    await _check_references(db, fields.get("project_id"), fields.get("assignee_id"))

    status_changed = False
    if data.status is not None:
        status_changed = _apply_status(task, data.status)

    for field in ("title", "priority"):
        if fields.get(field) is not None:
            setattr(task, field, fields[field])
    for field in ("description", "deadline", "project_id", "assignee_id"):
        if field in fields:
            setattr(task, field, fields[field] or None)

    if data.shared_with is not None:
        await replace_shares(db, task.id, data.shared_with)
        # share rows live in their own table; touch the task so its version advances
        task.updated_at = utcnow()

    if status_changed:
        record_activity(
            db, user.id, ActivityAction.TASK_STATUS_CHANGED,
            f"{user.name} moved \"{task.title}\" to {data.status.value}",
            project_id=task.project_id, task_id=task.id,
        )
    else:
        record_activity(
            db, user.id, ActivityAction.TASK_UPDATED,
            f"{user.name} updated task \"{task.title}\"",
            project_id=task.project_id, task_id=task.id,
        )

    await commit_or_conflict(db, CONFLICT)
    await db.refresh(task)
    return await _task_to_out(task, db)


@router.put("/{task_id}/share", response_model=TaskOut)
async def share_task(
    task_id: str,
    data: TaskShare,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Replace the list of users the task is shared with"""
    task = await get_visible_task(db, task_id, user)
    shared = await replace_shares(db, task.id, data.user_ids)
    task.updated_at = utcnow()

    record_activity(
        db, user.id, ActivityAction.TASK_SHARED,
        f"{user.name} shared \"{task.title}\" with {len(shared)} user(s)",
        project_id=task.project_id, task_id=task.id,
    )
    await commit_or_conflict(db, CONFLICT)
    await db.refresh(task)
    return await _task_to_out(task, db)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a task (creator or admin)"""
    task = await get_deletable_task(db, task_id, user)

    record_activity(
        db, user.id, ActivityAction.TASK_DELETED,
        f"{user.name} deleted task \"{task.title}\"",
        project_id=task.project_id, task_id=task.id,
    )
    await replace_shares(db, task.id, [])
    await db.execute(delete(Comment).where(Comment.task_id == task.id))
    await db.delete(task)
    await commit_or_conflict(db, CONFLICT)
    logger.info(f"Task {task_id} deleted by {user.id}")
    return {"status": "deleted", "task_id": task_id}


# ============================================================
# COMMENT ENDPOINTS
# ============================================================

@router.get("/{task_id}/comments", response_model=List[CommentOut])
async def list_comments(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List comments on a visible task, oldest first"""
    await get_visible_task(db, task_id, user)
    stmt = (
        select(Comment, User.name)
        .join(User, User.id == Comment.user_id)
        .where(Comment.task_id == task_id)
        .order_by(Comment.created_at.asc(), Comment.id)
    )
    rows = (await db.execute(stmt)).all()
    return [
        CommentOut(
            id=c.id,
            task_id=c.task_id,
            user_id=c.user_id,
            author_name=name,
            content=c.content,
            created_at=ts(c.created_at),
        )
        for c, name in rows
    ]


@router.post("/{task_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a comment to a visible task"""
    task = await get_visible_task(db, task_id, user)
    comment = Comment(content=data.content, task_id=task.id, user_id=user.id)
    db.add(comment)
    record_activity(
        db, user.id, ActivityAction.COMMENT_ADDED,
        f"{user.name} commented on \"{task.title}\"",
        project_id=task.project_id, task_id=task.id,
    )
    await db.commit()
    await db.refresh(comment)
    return CommentOut(
        id=comment.id,
        task_id=comment.task_id,
        user_id=comment.user_id,
        author_name=user.name,
        content=comment.content,
        created_at=ts(comment.created_at),
    )


@router.delete("/{task_id}/comments/{comment_id}")
async def delete_comment(
    task_id: str,
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a comment (author or admin)"""
    await get_visible_task(db, task_id, user)
    stmt = select(Comment).where(Comment.id == comment_id, Comment.task_id == task_id)
    comment = (await db.execute(stmt)).scalar_one_or_none()
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Can only delete your own comments")

    await db.delete(comment)
    await db.commit()
    return {"status": "deleted", "comment_id": comment_id}

# routers/users.py — User directory and admin user management
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, delete, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    get_current_user, require_admin, AuthService, SessionManager,
    CurrentUser, UserOut, user_to_out,
)
from database import get_db_session
from models import (
    User, UserRole, Task, Project, Comment, Activity, Feedback,
    task_shares, project_members,
)

logger = logging.getLogger("taskhub.users")

router = APIRouter(prefix="/api/users", tags=["Users"])


# --- Schemas ---

class AdminUserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    role: UserRole = UserRole.TEAM_MEMBER
    avatar: Optional[str] = None


class RoleUpdate(BaseModel):
    role: UserRole


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    target = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    role: Optional[UserRole] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List users (public fields only)"""
    stmt = select(User).order_by(User.name.asc(), User.id).offset(offset).limit(limit)
    if role:
        stmt = stmt.where(User.role == role)
    users = (await db.execute(stmt)).scalars().all()
    return [user_to_out(u) for u in users]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user"""
    return user_to_out(await _get_user_or_404(db, user_id))


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: AdminUserCreate,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an account with any role (admin only)"""
    new_user = await AuthService.create_user(
        db,
        username=data.username,
        password=data.password,
        name=data.name,
        email=data.email,
        role=data.role,
        avatar=data.avatar,
    )
    logger.info(f"Admin {admin.id} created user {new_user.id} with role {data.role.value}")
    return user_to_out(new_user)


@router.patch("/{user_id}/role", response_model=UserOut)
async def update_user_role(
    user_id: str,
    role_update: RoleUpdate,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a user's role (admin only)"""
    target = await _get_user_or_404(db, user_id)
    if target.id == admin.id and role_update.role != UserRole.ADMIN:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin role")

    old_role = target.role
    target.role = role_update.role
    db.add(target)
    await db.commit()
    await db.refresh(target)

    logger.info(f"Role of user {user_id} changed from {UserRole(old_role).value} to {role_update.role.value}")
    return user_to_out(target)


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Hard-delete a user (admin only)"""
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="Cannot delete yourself")

    target = await _get_user_or_404(db, user_id)

    owned_tasks = (await db.execute(
        select(func.count(Task.id)).where(Task.creator_id == user_id)
    )).scalar() or 0
    owned_projects = (await db.execute(
        select(func.count(Project.id)).where(Project.owner_id == user_id)
    )).scalar() or 0
    if owned_tasks or owned_projects:
        raise HTTPException(
            status_code=409,
            detail="User still owns tasks or projects; reassign or delete them first",
        )

    await SessionManager.destroy_all_for_user(db, user_id)
    await db.execute(delete(task_shares).where(task_shares.c.user_id == user_id))
    await db.execute(delete(project_members).where(project_members.c.user_id == user_id))
    await db.execute(
        update(Task).where(Task.assignee_id == user_id)
        .values(assignee_id=None, version=Task.version + 1)
    )
    await db.execute(delete(Comment).where(Comment.user_id == user_id))
    await db.execute(delete(Activity).where(Activity.user_id == user_id))
    await db.execute(update(Feedback).where(Feedback.user_id == user_id).values(user_id=None))
    await db.delete(target)
    await db.commit()

    logger.info(f"Admin {admin.id} deleted user {user_id}")
    return {"user_id": user_id, "status": "deleted"}

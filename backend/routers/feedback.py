# routers/feedback.py — User feedback collection
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_role, CurrentUser
from database import get_db_session
from models import Feedback, UserRole

router = APIRouter(prefix="/api/feedback", tags=["Feedback"])


class FeedbackCreate(BaseModel):
    category: str = Field(..., min_length=1, max_length=50)
    type: str = Field(..., min_length=1, max_length=50)
    rating: int = Field(..., ge=1, le=5)
    message: str = Field(..., min_length=1, max_length=5000)
    anonymous: bool = True


class FeedbackOut(BaseModel):
    id: str
    category: str
    type: str
    rating: int
    message: str
    anonymous: bool
    user_id: Optional[str] = None
    status: str
    created_at: Optional[str] = None


def _feedback_to_out(f: Feedback) -> FeedbackOut:
    return FeedbackOut(
        id=f.id,
        category=f.category,
        type=f.type,
        rating=f.rating,
        message=f.message,
        anonymous=f.anonymous,
        user_id=f.user_id,
        status=f.status,
        created_at=f.created_at.isoformat() if f.created_at else None,
    )


@router.post("", response_model=FeedbackOut, status_code=201)
async def submit_feedback(
    data: FeedbackCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Submit feedback; anonymous submissions are not linked to the sender"""
    feedback = Feedback(
        category=data.category,
        type=data.type,
        rating=data.rating,
        message=data.message,
        anonymous=data.anonymous,
        user_id=None if data.anonymous else user.id,
    )
    db.add(feedback)
    await db.commit()
    await db.refresh(feedback)
    return _feedback_to_out(feedback)


@router.get("", response_model=List[FeedbackOut])
async def list_feedback(
    user: CurrentUser = Depends(require_role(UserRole.ADMIN, UserRole.TEAM_LEADER)),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=100, ge=1, le=500),
):
    """All feedback, newest first (admins and team leaders)"""
    stmt = select(Feedback).order_by(Feedback.created_at.desc(), Feedback.id).limit(limit)
    items = (await db.execute(stmt)).scalars().all()
    return [_feedback_to_out(f) for f in items]

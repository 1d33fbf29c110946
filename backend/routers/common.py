# routers/common.py — Helpers shared by the resource routers
from datetime import datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError


def ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


async def commit_or_conflict(db: AsyncSession, detail: str):
    """Commit; a version mismatch caught at flush becomes 409 ``detail``."""
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise HTTPException(status_code=409, detail=detail)

# routers/auth.py — Session-based authentication endpoints (local + Google)
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, SessionManager, UserRegister, UserLogin, UserOut,
    get_current_user, CurrentUser, user_to_out, INVALID_CREDENTIALS,
)
from config import get_settings
from database import get_db_session
from models import User
from oauth import (
    GoogleOAuthProvider, get_oauth_provider, create_state, verify_state,
    STATE_COOKIE_NAME,
)

logger = logging.getLogger("taskhub.auth")

settings = get_settings()

router = APIRouter(prefix="/api", tags=["Authentication"])

OAUTH_COOKIE_PATH = "/api/auth/google"


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    avatar: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


async def _load_user(db: AsyncSession, user_id: str) -> User:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


# ============================================================
# LOCAL AUTHENTICATION
# ============================================================

@router.post("/register", response_model=UserOut, status_code=201)
async def register(
    user_data: UserRegister,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account and sign it in"""
    user = await AuthService.register_user(user_data, db)
    token = await SessionManager.create(db, user.id, request)
    SessionManager.set_cookie(response, token)
    return user_to_out(user)


@router.post("/login", response_model=UserOut)
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate with username and password"""
    user = await AuthService.authenticate_user(credentials.username, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)
    token = await SessionManager.create(db, user.id, request)
    SessionManager.set_cookie(response, token)
    return user_to_out(user)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """End the current session, if there is one"""
    if await SessionManager.destroy(db, request.cookies.get(settings.SESSION_COOKIE_NAME)):
        logger.info("Session terminated")
    SessionManager.clear_cookie(response)
    return {"message": "Logged out successfully"}


# ============================================================
# CURRENT USER
# ============================================================

@router.get("/user", response_model=UserOut)
async def get_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the signed-in user"""
    return user_to_out(await _load_user(db, user.id))


@router.patch("/user", response_model=UserOut)
async def update_me(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update the signed-in user's profile"""
    target = await _load_user(db, user.id)
    await AuthService.ensure_unique(
        db,
        username=data.username if data.username and data.username != target.username else None,
        email=data.email if data.email and data.email.lower() != target.email.lower() else None,
        exclude_id=target.id,
    )

    if data.username is not None:
        target.username = data.username
    if data.name is not None:
        target.name = data.name
    if data.email is not None:
        target.email = data.email
    if data.avatar is not None:
        target.avatar = data.avatar or None

    db.add(target)
    await db.commit()
    await db.refresh(target)
    return user_to_out(target)


@router.patch("/user/password")
async def change_password(
    data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change the signed-in user's password; other sessions are signed out"""
    target = await _load_user(db, user.id)
    await AuthService.change_password(db, target, data.current_password, data.new_password)
    await SessionManager.destroy_all_for_user(db, target.id, except_id=user.session_id)
    await db.commit()
    logger.info(f"Password changed for user {target.id}")
    return {"message": "Password updated successfully"}


# ============================================================
# GOOGLE OAUTH
# ============================================================

@router.get("/auth/google")
async def google_login(provider: GoogleOAuthProvider = Depends(get_oauth_provider)):
    """Redirect the browser to Google's consent screen"""
    state = create_state()
    response = RedirectResponse(provider.authorization_url(state), status_code=302)
    response.set_cookie(
        key=STATE_COOKIE_NAME,
        value=state,
        max_age=settings.OAUTH_STATE_EXPIRE_SECONDS,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
        path=OAUTH_COOKIE_PATH,
    )
    return response


@router.get("/auth/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    provider: GoogleOAuthProvider = Depends(get_oauth_provider),
    db: AsyncSession = Depends(get_db_session),
):
    """Finish the Google sign-in and start a session"""
    if error:
        logger.warning(f"Google sign-in rejected by provider: {error}")
        response = RedirectResponse(settings.OAUTH_FAILURE_REDIRECT, status_code=302)
        response.delete_cookie(STATE_COOKIE_NAME, path=OAUTH_COOKIE_PATH)
        return response

    if not verify_state(state, request.cookies.get(STATE_COOKIE_NAME)):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        profile = await provider.fetch_profile(code)
    except httpx.HTTPError as e:
        logger.error(f"Google token exchange failed: {e}")
        raise HTTPException(status_code=500, detail="Authentication provider error")

    if not profile.provider_id:
        raise HTTPException(status_code=400, detail="Identity provider did not return a subject")

    user = await AuthService.provision_federated_user(profile, db)
    token = await SessionManager.create(db, user.id, request)

    response = RedirectResponse(settings.OAUTH_SUCCESS_REDIRECT, status_code=302)
    SessionManager.set_cookie(response, token)
    response.delete_cookie(STATE_COOKIE_NAME, path=OAUTH_COOKIE_PATH)
    logger.info(f"User {user.id} signed in with Google")
    return response

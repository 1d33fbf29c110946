# auth.py — Identity & access control for TaskHub
# Features:
# - scrypt password hashing, "<hex hash>.<salt>" storage, constant-time verify
# - Server-side sessions addressed by an opaque HTTP-only cookie
# - Session eviction by age (one week) and by per-user count
# - Local username/password authentication without username enumeration
# - Federated account provisioning (Google)
# - Route guards: authenticated, role-restricted

import asyncio
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, Depends, Request, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db_session
from models import User, UserSession, UserRole, utcnow, as_utc

logger = logging.getLogger("taskhub.auth")

settings = get_settings()

# scrypt cost parameters (N=2^14, r=8, p=1, 64-byte key)
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_KEY_LEN = 64
SALT_BYTES = 16

INVALID_CREDENTIALS = "Invalid username or password"


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    avatar: Optional[str] = None


class UserLogin(BaseModel):
    username: str
    password: str


class UserOut(BaseModel):
    id: str
    username: str
    name: str
    email: str
    role: str
    avatar: Optional[str] = None
    created_at: Optional[str] = None


class CurrentUser(BaseModel):
    id: str
    username: str
    name: str
    email: str
    role: str
    avatar: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


class FederatedProfile(BaseModel):
    """Identity asserted by an external provider."""
    provider: str
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None


def user_to_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        username=user.username,
        name=user.name,
        email=user.email,
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        avatar=user.avatar,
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


# ============================================================
# PASSWORD HASHING
# ============================================================

class PasswordHasher:
    """scrypt with a per-user random salt, stored as "<hex hash>.<salt>"."""

    @staticmethod
    def _derive(password: str, salt: str) -> bytes:
        return hashlib.scrypt(
            password.encode("utf-8"),
            salt=salt.encode("utf-8"),
            n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P,
            dklen=SCRYPT_KEY_LEN,
        )

    @staticmethod
    def hash(password: str) -> str:
        salt = secrets.token_hex(SALT_BYTES)
        return f"{PasswordHasher._derive(password, salt).hex()}.{salt}"

    @staticmethod
    def verify(password: str, stored: Optional[str]) -> bool:
        if not stored or "." not in stored:
            return False
        hashed, salt = stored.split(".", 1)
        try:
            expected = bytes.fromhex(hashed)
        except ValueError:
            return False
        if not salt or len(expected) != SCRYPT_KEY_LEN:
            return False
        return hmac.compare_digest(expected, PasswordHasher._derive(password, salt))

    @staticmethod
    async def hash_async(password: str) -> str:
        return await asyncio.to_thread(PasswordHasher.hash, password)

    @staticmethod
    async def verify_async(password: str, stored: Optional[str]) -> bool:
        return await asyncio.to_thread(PasswordHasher.verify, password, stored)


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Verified against when the username is unknown so timing matches a real check
    return PasswordHasher.hash(secrets.token_urlsafe(16))


# ============================================================
# SESSION MANAGER
# ============================================================

class SessionManager:
    """Server-side session store. The cookie carries an opaque token; only a
    keyed digest of it is persisted."""

    @staticmethod
    def _digest(token: str) -> str:
        return hmac.new(
            settings.SESSION_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    @staticmethod
    async def create(db: AsyncSession, user_id: str, request: Optional[Request] = None) -> str:
        token = secrets.token_urlsafe(32)
        now = utcnow()
        db.add(UserSession(
            id=SessionManager._digest(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.SESSION_MAX_AGE_SECONDS),
            user_agent=request.headers.get("user-agent") if request else None,
            ip_address=request.client.host if request and request.client else None,
        ))
        await db.flush()
        await SessionManager._evict_overflow(db, user_id)
        await db.commit()
        return token

    @staticmethod
    async def _evict_overflow(db: AsyncSession, user_id: str) -> None:
        """Keep at most MAX_SESSIONS_PER_USER sessions, dropping the oldest."""
        stmt = (
            select(UserSession.id)
            .where(UserSession.user_id == user_id)
            .order_by(UserSession.created_at.desc())
            .offset(settings.MAX_SESSIONS_PER_USER)
        )
        stale_ids = (await db.execute(stmt)).scalars().all()
        if stale_ids:
            await db.execute(delete(UserSession).where(UserSession.id.in_(stale_ids)))
            logger.info(f"Evicted {len(stale_ids)} old session(s) for user {user_id}")

    @staticmethod
    async def resolve(db: AsyncSession, token: Optional[str]) -> Optional[UserSession]:
        if not token:
            return None
        stmt = select(UserSession).where(UserSession.id == SessionManager._digest(token))
        session = (await db.execute(stmt)).scalar_one_or_none()
        if session is None:
            return None
        if as_utc(session.expires_at) <= utcnow():
            await db.delete(session)
            await db.commit()
            return None
        return session

    @staticmethod
    async def destroy(db: AsyncSession, token: Optional[str]) -> bool:
        if not token:
            return False
        result = await db.execute(
            delete(UserSession).where(UserSession.id == SessionManager._digest(token))
        )
        await db.commit()
        return (result.rowcount or 0) > 0

    @staticmethod
    async def destroy_all_for_user(db: AsyncSession, user_id: str, except_id: Optional[str] = None) -> None:
        stmt = delete(UserSession).where(UserSession.user_id == user_id)
        if except_id:
            stmt = stmt.where(UserSession.id != except_id)
        await db.execute(stmt)

    @staticmethod
    async def purge_expired(db: AsyncSession) -> int:
        result = await db.execute(delete(UserSession).where(UserSession.expires_at <= utcnow()))
        await db.commit()
        return result.rowcount or 0

    @staticmethod
    def set_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            key=settings.SESSION_COOKIE_NAME,
            value=token,
            max_age=settings.SESSION_MAX_AGE_SECONDS,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
            path="/",
        )

    @staticmethod
    def clear_cookie(response: Response) -> None:
        response.delete_cookie(
            key=settings.SESSION_COOKIE_NAME,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
            path="/",
        )


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Local and federated authentication"""

    @staticmethod
    def check_password_policy(password: str) -> None:
        if len(password) < settings.MIN_PASSWORD_LENGTH:
            raise HTTPException(
                status_code=400,
                detail=f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters",
            )

    @staticmethod
    async def ensure_unique(
        db: AsyncSession,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        if username is not None:
            stmt = select(User.id).where(User.username == username)
            if exclude_id:
                stmt = stmt.where(User.id != exclude_id)
            if (await db.execute(stmt)).first():
                raise HTTPException(status_code=400, detail="Username already exists")
        if email is not None:
            stmt = select(User.id).where(func.lower(User.email) == email.lower())
            if exclude_id:
                stmt = stmt.where(User.id != exclude_id)
            if (await db.execute(stmt)).first():
                raise HTTPException(status_code=400, detail="Email already registered")

    @staticmethod
    async def _insert_user(db: AsyncSession, user: User) -> None:
        """Commit a new user; a lost race on a unique column becomes 400."""
        username = user.username
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"Duplicate user insert rejected for {username}")
            taken = (await db.execute(select(User.id).where(User.username == username))).first()
            detail = "Username already exists" if taken else "Email already registered"
            raise HTTPException(status_code=400, detail=detail)
        await db.refresh(user)

    @staticmethod
    async def create_user(
        db: AsyncSession,
        username: str,
        password: str,
        name: str,
        email: str,
        role: UserRole = UserRole.TEAM_MEMBER,
        avatar: Optional[str] = None,
    ) -> User:
        AuthService.check_password_policy(password)
        await AuthService.ensure_unique(db, username=username, email=email)

        user = User(
            username=username,
            password_hash=await PasswordHasher.hash_async(password),
            name=name,
            email=email,
            role=role,
            avatar=avatar,
        )
        await AuthService._insert_user(db, user)
        return user

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        user = await AuthService.create_user(
            db,
            username=user_data.username,
            password=user_data.password,
            name=user_data.name,
            email=user_data.email,
            avatar=user_data.avatar,
        )
        logger.info(f"Registered user {user.id} ({user.username})")
        return user

    @staticmethod
    async def authenticate_user(username: str, password: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).where(User.username == username)
        user = (await db.execute(stmt)).scalar_one_or_none()

        if user is None or not user.password_hash:
            # Same work as a real check, same outcome for every failure
            await PasswordHasher.verify_async(password, _dummy_hash())
            logger.info("Failed login attempt")
            return None

        if not await PasswordHasher.verify_async(password, user.password_hash):
            logger.info(f"Failed login attempt for user {user.id}")
            return None

        logger.info(f"User {user.id} logged in")
        return user

    @staticmethod
    async def change_password(db: AsyncSession, user: User, current_password: str, new_password: str) -> None:
        if not await PasswordHasher.verify_async(current_password, user.password_hash):
            raise HTTPException(status_code=401, detail="Current password is incorrect")
        AuthService.check_password_policy(new_password)
        user.password_hash = await PasswordHasher.hash_async(new_password)
        db.add(user)
        await db.commit()

    @staticmethod
    async def provision_federated_user(profile: FederatedProfile, db: AsyncSession) -> User:
        """Find or create the local account for a provider-asserted identity.

        Lookup order is the stored provider id, then the email. The same email
        always resolves to the same local user.
        """
        if not profile.email:
            raise HTTPException(status_code=400, detail="Email not provided by identity provider")

        stmt = select(User).where(User.google_id == profile.provider_id)
        user = (await db.execute(stmt)).scalar_one_or_none()
        if user is None:
            stmt = select(User).where(func.lower(User.email) == profile.email.lower())
            user = (await db.execute(stmt)).scalars().first()

        if user is not None:
            changed = False
            if not user.google_id:
                user.google_id = profile.provider_id
                changed = True
            if not user.avatar and profile.avatar:
                user.avatar = profile.avatar
                changed = True
            if changed:
                db.add(user)
                await db.commit()
                await db.refresh(user)
            return user

        user = User(
            username=f"{profile.provider}_{profile.provider_id}",
            password_hash=None,
            name=profile.name or "Unknown User",
            email=profile.email,
            role=UserRole.TEAM_MEMBER,
            avatar=profile.avatar,
            google_id=profile.provider_id,
        )
        await AuthService._insert_user(db, user)
        logger.info(f"Provisioned {profile.provider} user {user.id} ({user.username})")
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    session = await SessionManager.resolve(db, token)
    if session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user = (await db.execute(select(User).where(User.id == session.user_id))).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    return CurrentUser(
        id=user.id,
        username=user.username,
        name=user.name,
        email=user.email,
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        avatar=user.avatar,
        session_id=session.id,
    )


def require_role(*roles: UserRole):
    """Dependency factory: require user to have one of the specified roles"""
    allowed = {UserRole(r) for r in roles}

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if UserRole(user.role) not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient permissions")
        return user
    return _check


require_admin = require_role(UserRole.ADMIN)

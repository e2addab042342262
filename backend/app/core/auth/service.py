import logging
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth.mailer import MailDeliveryError, Mailer
from app.core.auth.models import PasswordResetToken, RefreshToken
from app.core.auth.security import (
    create_access_token,
    generate_refresh_token,
    generate_reset_token,
    hash_password,
    hash_refresh_token,
    hash_reset_token,
    verify_password,
)
from app.core.users.models import User
from app.core.users.schemas import UserCreate
from app.core.users.service import create_user, get_user, get_user_by_email
from app.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class AuthResult:
    def __init__(self, access_token: str, refresh_token: str):
        self.access_token = access_token
        self.refresh_token = refresh_token


async def _issue_tokens(db: AsyncSession, user: User) -> AuthResult:
    access_token = create_access_token(user.id, user.role.value)
    raw_refresh, refresh_hash = generate_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=refresh_hash,
        expires_at=datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
    ))
    await db.flush()
    return AuthResult(access_token=access_token, refresh_token=raw_refresh)


class LocalAuthProvider:
    async def register(self, db: AsyncSession, data: UserCreate) -> AuthResult:
        if await get_user_by_email(db, data.email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")
        user = await create_user(db, data)
        logger.info("Registered user %s", user.id)
        return await _issue_tokens(db, user)

    async def login(self, db: AsyncSession, email: str, password: str) -> AuthResult:
        user = await get_user_by_email(db, email)
        if not user or not verify_password(password, user.hashed_password):
            logger.info("Rejected login for %s", email.lower())
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
        return await _issue_tokens(db, user)


_provider = LocalAuthProvider()


def get_auth_provider() -> LocalAuthProvider:
    return _provider


async def refresh_tokens(db: AsyncSession, raw_token: str) -> AuthResult:
    token_hash = hash_refresh_token(raw_token)
    result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
    db_token: RefreshToken | None = result.scalar_one_or_none()

    now = datetime.now(timezone.utc)
    if not db_token or db_token.revoked_at is not None or db_token.expires_at.replace(tzinfo=timezone.utc) < now:
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")

    user = await get_user(db, db_token.user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")

    db_token.revoked_at = now
    return await _issue_tokens(db, user)


async def logout(db: AsyncSession, raw_token: str) -> None:
    token_hash = hash_refresh_token(raw_token)
    result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
    db_token: RefreshToken | None = result.scalar_one_or_none()
    if db_token and db_token.revoked_at is None:
        db_token.revoked_at = datetime.now(timezone.utc)
        await db.flush()


async def request_password_reset(db: AsyncSession, email: str, mailer: Mailer) -> None:
    """Issue a one-time reset token and mail its link. Unknown addresses are ignored silently."""
    user = await get_user_by_email(db, email)
    if not user:
        logger.info("Password reset requested for unknown address %s", email.lower())
        return

    now = datetime.now(timezone.utc)
    # only the newest link works
    await db.execute(
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user.id, PasswordResetToken.used_at.is_(None))
        .values(used_at=now)
    )
    raw_token, token_hash = generate_reset_token()
    db.add(PasswordResetToken(
        user_id=user.id,
        token_hash=token_hash,
        expires_at=now + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
    ))
    await db.flush()

    reset_url = f"{settings.PASSWORD_RESET_URL}?{urlencode({'token': raw_token})}"
    try:
        await mailer.send_password_reset(user.email, reset_url)
    except MailDeliveryError:
        logger.exception("Could not send password reset mail to %s", user.id)
        # the request transaction rolls back, so the unsent token is never stored
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send reset email")
    logger.info("Issued password reset token for %s", user.id)


async def reset_password(db: AsyncSession, raw_token: str, new_password: str) -> None:
    token_hash = hash_reset_token(raw_token)
    result = await db.execute(select(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash))
    db_token: PasswordResetToken | None = result.scalar_one_or_none()

    now = datetime.now(timezone.utc)
    if not db_token or db_token.used_at is not None or db_token.expires_at.replace(tzinfo=timezone.utc) <= now:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired reset token")

    user = await get_user(db, db_token.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired reset token")

    user.hashed_password = hash_password(new_password)
    db_token.used_at = now
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user.id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
    )
    await db.flush()
    logger.info("Password reset for %s", user.id)

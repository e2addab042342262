import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth.mailer import Mailer, build_mailer
from app.core.auth.security import decode_access_token
from app.core.files.service import FileService
from app.core.files.storage import LocalBlobStore
from app.core.users.models import User, UserRole
from app.core.users.service import get_user
from app.db.session import AsyncSessionLocal
from app.settings import get_settings

bearer = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    user: User
    user_id: uuid.UUID
    role: UserRole


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer)],
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = await get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return CurrentUser(user=user, user_id=user.id, role=user.role)


@lru_cache
def get_mailer() -> Mailer:
    return build_mailer(get_settings())


@lru_cache
def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(get_settings())


def get_file_service(blob_store: LocalBlobStore = Depends(get_blob_store)) -> FileService:
    return FileService(AsyncSessionLocal, blob_store, get_settings())

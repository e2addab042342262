import uuid
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from app.core.users.models import UserRole


class UserCreate(BaseModel):
    name: str | None = Field(None, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    email: str
    name: str | None
    role: UserRole
    created_at: datetime

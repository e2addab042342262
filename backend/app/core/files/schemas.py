import uuid
from datetime import datetime
from enum import Enum
from pydantic import BaseModel

from app.core.files.models import FileStatus


class FileRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    owner_id: uuid.UUID
    stored_name: str
    original_name: str
    storage_path: str
    size_bytes: int
    content_kind: str
    status: FileStatus
    created_at: datetime


class ColumnType(str, Enum):
    string = "string"
    number = "number"
    date = "date"


class ColumnRead(BaseModel):
    id: str
    label: str
    type: ColumnType


class FileStructure(BaseModel):
    columns: list[ColumnRead]


class MessageResponse(BaseModel):
    message: str

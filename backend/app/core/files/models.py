import enum
import uuid

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class FileStatus(str, enum.Enum):
    uploaded = "uploaded"
    analyzed = "analyzed"


class FileRecord(Base, TimestampMixin):
    """
    Metadata for one uploaded tabular file. The bytes live in the blob store at storage_path.
    Everything except status is fixed at creation.
    """
    __tablename__ = "file_records"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    stored_name: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[FileStatus] = mapped_column(
        Enum(FileStatus, name="file_status", native_enum=False, length=20), nullable=False, default=FileStatus.uploaded,
    )

    __table_args__ = (Index("ix_file_records_owner_created", "owner_id", "created_at"),)

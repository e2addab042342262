import uuid
from dataclasses import dataclass

from app.core.files.exceptions import NotFound
from app.core.files.models import FileRecord


@dataclass(frozen=True)
class AccessGuard:
    """Ownership check shared by every file query and mutation."""

    owner_id: uuid.UUID

    def owns(self, record: FileRecord | None) -> bool:
        return record is not None and record.owner_id == self.owner_id

    def ensure_owned(self, record: FileRecord | None) -> FileRecord:
        if not self.owns(record):
            raise NotFound()
        return record

import asyncio
import functools
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, BinaryIO, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.files.access import AccessGuard
from app.core.files.exceptions import (
    MissingFile,
    MultipleFilesNotAllowed,
    PayloadTooLarge,
    StorageError,
    UnsupportedMediaType,
    ValidationError,
)
from app.core.files.inference import CSV_MIME, XLS_MIME, XLSX_MIME, infer_columns
from app.core.files.models import FileRecord, FileStatus
from app.core.files.schemas import FileStructure
from app.core.files.storage import LocalBlobStore
from app.settings import Settings

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({XLS_MIME, XLSX_MIME, CSV_MIME})
LISTED_STATUSES = (FileStatus.uploaded, FileStatus.analyzed)


@dataclass
class IncomingFile:
    stream: BinaryIO
    name: str
    mime_type: str | None
    size_bytes: int | None = None


def normalize_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


class FileService:
    """
    Upload, listing, lookup, deletion and schema inference for one user's tabular files.
    Every operation runs in its own transaction so that blob cleanup can follow the commit outcome.
    """

    def __init__(self, session_factory: async_sessionmaker, blob_store: LocalBlobStore, settings: Settings):
        self._session_factory = session_factory
        self.blob_store = blob_store
        self.settings = settings

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    async def _load_owned(self, db: AsyncSession, guard: AccessGuard, file_id: uuid.UUID) -> FileRecord:
        result = await db.execute(
            select(FileRecord).where(FileRecord.id == file_id, FileRecord.owner_id == guard.owner_id)
        )
        return guard.ensure_owned(result.scalar_one_or_none())

    # ── Ingestion ────────────────────────────────────────────────────────────

    def _validate(self, files: Sequence[IncomingFile]) -> tuple[IncomingFile, str]:
        if not files:
            raise MissingFile()
        if len(files) > 1:
            raise MultipleFilesNotAllowed()
        incoming = files[0]
        mime_type = normalize_mime(incoming.mime_type)
        if mime_type not in ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType()
        if incoming.size_bytes is not None and incoming.size_bytes > self.settings.MAX_UPLOAD_BYTES:
            raise PayloadTooLarge(f"File exceeds limit of {self.settings.MAX_UPLOAD_BYTES} bytes")
        return incoming, mime_type

    def _write_blob(self, incoming: IncomingFile, stored_name: str) -> int:
        limit = self.settings.MAX_UPLOAD_BYTES
        try:
            with self.blob_store.writer(stored_name) as blob:
                while chunk := incoming.stream.read(self.settings.UPLOAD_CHUNK_BYTES):
                    if blob.bytes_written + len(chunk) > limit:
                        raise PayloadTooLarge(f"File exceeds limit of {limit} bytes")
                    blob.write(chunk)
                return blob.bytes_written
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def _discard_late_blob(self, storage_path: str, writing: asyncio.Future) -> None:
        if writing.cancelled() or writing.exception() is not None:
            return
        self.blob_store.delete(storage_path)
        logger.info("Removed blob %s of a cancelled upload", storage_path)

    async def upload(self, owner_id: uuid.UUID, files: Sequence[IncomingFile]) -> FileRecord:
        try:
            incoming, mime_type = self._validate(files)
        except ValidationError as exc:
            logger.info("Rejected upload from %s: %s", owner_id, exc.detail)
            raise

        stored_name = self.blob_store.generate_name(incoming.name)
        storage_path = str(self.blob_store.path_for(stored_name))
        loop = asyncio.get_running_loop()
        writing = loop.run_in_executor(None, self._write_blob, incoming, stored_name)
        try:
            size_bytes = await asyncio.shield(writing)
        except asyncio.CancelledError:
            # the worker thread keeps writing after a cancel
            writing.add_done_callback(functools.partial(self._discard_late_blob, storage_path))
            raise

        record = FileRecord(
            owner_id=owner_id,
            stored_name=stored_name,
            original_name=incoming.name,
            storage_path=storage_path,
            size_bytes=size_bytes,
            content_kind=mime_type,
            status=FileStatus.uploaded,
        )
        try:
            async with self._transaction() as db:
                db.add(record)
                await db.flush()
        except BaseException:
            self.blob_store.delete(storage_path)
            raise

        logger.info("Accepted upload %s (%s, %d bytes) for %s", record.id, record.original_name, size_bytes, owner_id)
        return record

    # ── Reconciliation ───────────────────────────────────────────────────────

    async def reconcile(self, owner_id: uuid.UUID) -> int:
        """Delete the owner's records whose blob is gone. Never raises; returns how many were removed."""
        try:
            async with self._transaction() as db:
                result = await db.execute(select(FileRecord).where(FileRecord.owner_id == owner_id))
                records = list(result.scalars().all())
        except StorageError:
            logger.exception("Error cleaning up file records for %s", owner_id)
            return 0

        removed = 0
        for record in records:
            try:
                if self.blob_store.exists(record.storage_path):
                    continue
                async with self._transaction() as db:
                    await db.execute(
                        delete(FileRecord).where(FileRecord.id == record.id, FileRecord.owner_id == owner_id)
                    )
            except (StorageError, OSError):
                logger.exception("Could not reconcile file record %s", record.id)
                continue
            removed += 1
            logger.info("Deleted non-existent file from database: %s", record.stored_name)
        return removed

    # ── Queries ──────────────────────────────────────────────────────────────

    async def list_files(self, owner_id: uuid.UUID) -> list[FileRecord]:
        await self.reconcile(owner_id)
        async with self._transaction() as db:
            result = await db.execute(
                select(FileRecord)
                .where(FileRecord.owner_id == owner_id, FileRecord.status.in_(LISTED_STATUSES))
                .order_by(FileRecord.created_at.desc())
            )
            records = list(result.scalars().all())
        live = [r for r in records if self.blob_store.exists(r.storage_path)]
        logger.info("Found %d valid files for user %s", len(live), owner_id)
        return live

    async def get_file(self, owner_id: uuid.UUID, file_id: uuid.UUID) -> FileRecord:
        async with self._transaction() as db:
            return await self._load_owned(db, AccessGuard(owner_id), file_id)

    async def delete_file(self, owner_id: uuid.UUID, file_id: uuid.UUID) -> None:
        async with self._transaction() as db:
            record = await self._load_owned(db, AccessGuard(owner_id), file_id)
            await db.delete(record)

        try:
            self.blob_store.delete(record.storage_path)
        except OSError:
            logger.exception("Could not remove blob %s, leaving it orphaned", record.storage_path)
        logger.info("Deleted file %s for %s", file_id, owner_id)

    # ── Schema inference ─────────────────────────────────────────────────────

    async def infer_schema(self, owner_id: uuid.UUID, file_id: uuid.UUID) -> FileStructure:
        record = await self.get_file(owner_id, file_id)
        loop = asyncio.get_running_loop()
        columns = await loop.run_in_executor(
            None,
            functools.partial(
                infer_columns, record.storage_path, record.content_kind, self.settings.SCHEMA_SAMPLE_ROWS,
            ),
        )
        logger.info("Extracted %d columns from %s", len(columns), record.id)

        if record.status is not FileStatus.analyzed:
            try:
                async with self._transaction() as db:
                    await db.execute(
                        update(FileRecord)
                        .where(FileRecord.id == record.id, FileRecord.owner_id == owner_id)
                        .values(status=FileStatus.analyzed)
                    )
            except StorageError:
                logger.exception("Could not mark file %s as analyzed", record.id)
        return FileStructure(columns=columns)

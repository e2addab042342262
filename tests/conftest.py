import io
import os
import tempfile
import uuid

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="uploads-"))

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.db.base import Base
from app.core.auth.mailer import MailDeliveryError
from app.core.auth.models import PasswordResetToken, RefreshToken  # noqa
from app.core.files.models import FileRecord  # noqa
from app.core.files.service import FileService, IncomingFile
from app.core.files.storage import LocalBlobStore
from app.core.users.models import User  # noqa
from app.dependencies import get_db, get_file_service, get_mailer
from app.main import app
from app.settings import Settings

CSV_MIME = "text/csv"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        MAX_UPLOAD_BYTES=1024,
        UPLOAD_CHUNK_BYTES=64,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def blob_store(settings):
    store = LocalBlobStore(settings)
    store.ensure_root()
    return store


@pytest.fixture
def file_service(session_factory, blob_store, settings):
    return FileService(session_factory, blob_store, settings)


@pytest.fixture
def owner_id():
    return uuid.uuid4()


def csv_upload(text: str, name: str = "people.csv", mime_type: str | None = CSV_MIME, size_bytes: int | None = None) -> IncomingFile:
    data = text.encode()
    return IncomingFile(stream=io.BytesIO(data), name=name, mime_type=mime_type, size_bytes=size_bytes)


class RecordingMailer:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send_password_reset(self, email: str, reset_url: str) -> None:
        if self.fail:
            raise MailDeliveryError("smtp down")
        self.sent.append((email, reset_url))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture
async def client(session_factory, file_service, mailer):
    async def override_get_db():
        async with session_factory() as session:
            async with session.begin():
                yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_service] = lambda: file_service
    app.dependency_overrides[get_mailer] = lambda: mailer
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

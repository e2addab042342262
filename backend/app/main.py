import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.auth.router import router as auth_router
from app.core.files.exceptions import FileServiceError, NotFound, ReadError, StorageError, ValidationError
from app.core.files.router import router as files_router
from app.core.requestlog.middleware import RequestLogMiddleware
from app.dependencies import get_blob_store
from app.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFound, 404),
    (ReadError, 500),
    (StorageError, 500),
)


async def file_service_error_handler(request: Request, exc: FileServiceError) -> JSONResponse:
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=status_code, content={"message": exc.message, "error": exc.detail})


@asynccontextmanager
async def lifespan(app: FastAPI):
    blob_store = get_blob_store()
    blob_store.ensure_root()
    logger.info("Upload directory: %s", blob_store.root)
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Tabular Files API",
        version="0.1.0",
        docs_url="/docs" if settings.APP_DEBUG else None,
        redoc_url="/redoc" if settings.APP_DEBUG else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(FileServiceError, file_service_error_handler)

    app.include_router(auth_router)
    app.include_router(files_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

import uuid

from fastapi import APIRouter, Depends, File, UploadFile

from app.core.files.exceptions import NotFound
from app.core.files.schemas import FileRead, FileStructure, MessageResponse
from app.core.files.service import FileService, IncomingFile
from app.dependencies import get_current_user, get_file_service, CurrentUser

router = APIRouter(prefix="/files", tags=["files"])


def _parse_file_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise NotFound()


@router.post("/upload", response_model=FileRead)
async def upload_file(
    file: list[UploadFile] | None = File(None),
    service: FileService = Depends(get_file_service),
    current: CurrentUser = Depends(get_current_user),
):
    parts = [
        IncomingFile(stream=f.file, name=f.filename or "upload", mime_type=f.content_type, size_bytes=f.size)
        for f in file or []
    ]
    return await service.upload(current.user_id, parts)


@router.get("", response_model=list[FileRead])
async def list_files(
    service: FileService = Depends(get_file_service),
    current: CurrentUser = Depends(get_current_user),
):
    return await service.list_files(current.user_id)


@router.get("/{file_id}/structure", response_model=FileStructure)
async def get_file_structure(
    file_id: str,
    service: FileService = Depends(get_file_service),
    current: CurrentUser = Depends(get_current_user),
):
    return await service.infer_schema(current.user_id, _parse_file_id(file_id))


@router.get("/{file_id}", response_model=FileRead)
async def get_file(
    file_id: str,
    service: FileService = Depends(get_file_service),
    current: CurrentUser = Depends(get_current_user),
):
    return await service.get_file(current.user_id, _parse_file_id(file_id))


@router.delete("/{file_id}", response_model=MessageResponse)
async def delete_file(
    file_id: str,
    service: FileService = Depends(get_file_service),
    current: CurrentUser = Depends(get_current_user),
):
    await service.delete_file(current.user_id, _parse_file_id(file_id))
    return MessageResponse(message="File deleted successfully")

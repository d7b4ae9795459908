from dataclasses import asdict
from datetime import datetime
from io import BytesIO
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.api_support import allow_anonymous_reading, require_reader, visibility_value
from squirrel.src.modules.authorization import Principal, can_edit_file, can_view_file
from squirrel.src.modules.errors import AuthorizationException
from squirrel.src.modules.file_storage import create_local_storage
from squirrel.src.modules.files_service import FileDto, FileService
from squirrel.src.modules.folders_service import FolderService
from squirrel.src.modules.wiki_auth import get_current_user, require_admin, require_editor
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import get_session

router = APIRouter(prefix="/api/files", tags=["files"])
folders_router = APIRouter(prefix="/api/folders", tags=["folders"])


class FileUpdatePayload(BaseModel):
    file_name: str | None = None
    description: str | None = None
    visibility: Any = None


class FileMovePayload(BaseModel):
    folder_id: int | None = None


class FolderPayload(BaseModel):
    name: str
    parent_id: int | None = None
    description: str | None = None
    display_order: int = 0


class FolderUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    display_order: int | None = None


class FolderMovePayload(BaseModel):
    new_parent_id: int | None = None


class FileOut(BaseModel):
    id: str
    file_name: str
    file_hash: str
    file_size: int
    content_type: str
    description: str | None
    folder_id: int | None
    storage_provider: str
    uploaded_by: str
    uploaded_on: datetime
    visibility: int
    current_version: int
    width: int | None = None
    height: int | None = None
    url: str


class FileVersionOut(BaseModel):
    version_number: int
    file_hash: str
    file_size: int
    created_by: str
    created_on: datetime
    change_description: str | None


class FolderOut(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None
    parent_id: int | None
    display_order: int
    created_by: str
    created_on: datetime
    file_count: int
    subfolder_count: int


class FolderTreeOut(BaseModel):
    id: int
    name: str
    slug: str
    file_count: int
    children: list["FolderTreeOut"] = []


async def file_service(session: AsyncSession = Depends(get_session)) -> FileService:
    config = ConfigurationService(session)
    return FileService(session, await create_local_storage(config), config=config)


async def folder_service(
    session: AsyncSession = Depends(get_session),
    files: FileService = Depends(file_service),
) -> FolderService:
    return FolderService(session, files=files)


def _file_out(dto: FileDto) -> FileOut:
    data = asdict(dto)
    data.pop("file_path", None)
    return FileOut(**data, url=f"/api/files/{dto.id}/download")


async def _readable_file(service: FileService, file_id: str, principal: Principal) -> FileDto:
    dto = await service.get_by_id(file_id)
    require_reader(principal, can_view_file(dto, principal, await allow_anonymous_reading(service.session)))
    return dto


async def _editable_file(service: FileService, file_id: str, principal: Principal) -> FileDto:
    dto = await service.get_by_id(file_id)
    if not can_edit_file(dto, principal):
        raise AuthorizationException("File cannot be modified", username=principal.username, required_role="Editor")
    return dto


@router.post("", response_model=FileOut, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    folder_id: int | None = Form(default=None),
    description: str | None = Form(default=None),
    visibility: str | None = Form(default=None),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(require_editor),
):
    data = await file.read()
    dto = await service.upload(
        data,
        file.filename or "upload",
        content_type=file.content_type,
        folder_id=folder_id,
        description=description,
        visibility=visibility_value(visibility or 0),
        uploaded_by=principal.username,
    )
    return _file_out(dto)


@router.get("", response_model=list[FileOut])
async def list_files(
    folder_id: int | None = Query(default=None),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    allow = await allow_anonymous_reading(service.session)
    return [_file_out(f) for f in await service.get_by_folder(folder_id) if can_view_file(f, principal, allow)]


@router.get("/search", response_model=list[FileOut])
async def search_files(
    q: str | None = Query(default=None),
    folder_id: int | None = Query(default=None),
    content_type: str | None = Query(default=None),
    uploaded_by: str | None = Query(default=None),
    uploaded_after: datetime | None = Query(default=None),
    uploaded_before: datetime | None = Query(default=None),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    found = await service.search(q, folder_id, content_type, uploaded_by, uploaded_after, uploaded_before)
    allow = await allow_anonymous_reading(service.session)
    return [_file_out(f) for f in found if can_view_file(f, principal, allow)]


@router.get("/by-path", response_model=FileOut)
async def file_by_path(
    path: str = Query(..., min_length=1),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    dto = await service.get_by_path(path)
    require_reader(principal, can_view_file(dto, principal, await allow_anonymous_reading(service.session)))
    return _file_out(dto)


@router.get("/{file_id}", response_model=FileOut)
async def get_file(
    file_id: str,
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    return _file_out(await _readable_file(service, file_id, principal))


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    await _readable_file(service, file_id, principal)
    download = await service.download(file_id)
    headers = {
        "Content-Disposition": f"inline; filename*=UTF-8''{quote(download.file_name)}",
        "Content-Length": str(download.file_size),
        "Cache-Control": "private, max-age=3600",
    }
    return StreamingResponse(BytesIO(download.data), media_type=download.content_type, headers=headers)


@router.get("/{file_id}/versions", response_model=list[FileVersionOut])
async def file_versions(
    file_id: str,
    service: FileService = Depends(file_service),
    principal: Principal = Depends(get_current_user),
):
    await _readable_file(service, file_id, principal)
    return [FileVersionOut(**asdict(v)) for v in await service.get_versions(file_id)]


@router.post("/{file_id}/versions", response_model=FileOut)
async def upload_file_version(
    file_id: str,
    file: UploadFile = File(...),
    change_description: str | None = Form(default=None),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(require_editor),
):
    await _editable_file(service, file_id, principal)
    data = await file.read()
    dto = await service.upload_new_version(
        file_id, data, change_description=change_description, uploaded_by=principal.username
    )
    return _file_out(dto)


@router.put("/{file_id}", response_model=FileOut)
async def update_file(
    file_id: str,
    payload: FileUpdatePayload,
    service: FileService = Depends(file_service),
    principal: Principal = Depends(require_editor),
):
    await _editable_file(service, file_id, principal)
    dto = await service.update(
        file_id,
        file_name=payload.file_name,
        description=payload.description,
        visibility=visibility_value(payload.visibility) if payload.visibility is not None else None,
        updated_by=principal.username,
    )
    return _file_out(dto)


@router.post("/{file_id}/move", response_model=FileOut)
async def move_file(
    file_id: str,
    payload: FileMovePayload,
    service: FileService = Depends(file_service),
    principal: Principal = Depends(require_editor),
):
    await _editable_file(service, file_id, principal)
    return _file_out(await service.move(file_id, payload.folder_id, moved_by=principal.username))


@router.delete("/{file_id}", status_code=204)
async def delete_file(
    file_id: str,
    permanent: bool = Query(default=False),
    service: FileService = Depends(file_service),
    principal: Principal = Depends(require_editor),
):
    if permanent:
        if not principal.is_admin:
            raise AuthorizationException(
                "Permanent deletion requires an administrator", username=principal.username, required_role="Admin"
            )
        await service.permanent_delete(file_id)
        return
    await _editable_file(service, file_id, principal)
    await service.delete(file_id, deleted_by=principal.username)


@folders_router.get("", response_model=list[FolderOut])
async def root_folders(service: FolderService = Depends(folder_service)):
    return [FolderOut(**asdict(f)) for f in await service.get_roots()]


@folders_router.get("/tree", response_model=list[FolderTreeOut])
async def folder_tree(service: FolderService = Depends(folder_service)):
    return [FolderTreeOut(**asdict(node)) for node in await service.get_tree()]


@folders_router.post("", response_model=FolderOut, status_code=201)
async def create_folder(
    payload: FolderPayload,
    service: FolderService = Depends(folder_service),
    principal: Principal = Depends(require_editor),
):
    folder = await service.create(
        payload.name,
        parent_id=payload.parent_id,
        description=payload.description,
        display_order=payload.display_order,
        created_by=principal.username,
    )
    return FolderOut(**asdict(folder))


@folders_router.get("/{folder_id}", response_model=FolderOut)
async def get_folder(folder_id: int, service: FolderService = Depends(folder_service)):
    return FolderOut(**asdict(await service.get(folder_id)))


@folders_router.get("/{folder_id}/children", response_model=list[FolderOut])
async def folder_children(folder_id: int, service: FolderService = Depends(folder_service)):
    return [FolderOut(**asdict(f)) for f in await service.get_children(folder_id)]


@folders_router.get("/{folder_id}/breadcrumb", response_model=list[FolderOut])
async def folder_breadcrumb(folder_id: int, service: FolderService = Depends(folder_service)):
    return [FolderOut(**asdict(f)) for f in await service.get_breadcrumb(folder_id)]


@folders_router.put("/{folder_id}", response_model=FolderOut)
async def update_folder(
    folder_id: int,
    payload: FolderUpdatePayload,
    service: FolderService = Depends(folder_service),
    _auth: Principal = Depends(require_editor),
):
    folder = await service.update(
        folder_id, name=payload.name, description=payload.description, display_order=payload.display_order
    )
    return FolderOut(**asdict(folder))


@folders_router.post("/{folder_id}/move", response_model=FolderOut)
async def move_folder(
    folder_id: int,
    payload: FolderMovePayload,
    service: FolderService = Depends(folder_service),
    _auth: Principal = Depends(require_editor),
):
    return FolderOut(**asdict(await service.move(folder_id, payload.new_parent_id)))


@folders_router.delete("/{folder_id}", status_code=204)
async def delete_folder(
    folder_id: int,
    recursive: bool = Query(default=False),
    service: FolderService = Depends(folder_service),
    principal: Principal = Depends(require_admin),
):
    await service.delete(folder_id, recursive=recursive, deleted_by=principal.username)

"""
HTTP routes for the file storage API.
"""

from __future__ import annotations

import json
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from filevault.dependencies import get_file_service
from filevault.errors import InvalidInput, PayloadTooLarge
from filevault.schemas import (
    DeleteResponse,
    ErrorResponse,
    FileInfo,
    ShareResponse,
    UploadResponse,
)
from filevault.service import FileService

router = APIRouter()

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _parse_tags(raw: Optional[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        tags = json.loads(raw)
    except ValueError as exc:
        raise InvalidInput("metadata must be a JSON object") from exc
    if not isinstance(tags, dict):
        raise InvalidInput("metadata must be a JSON object")
    return {str(key): str(value) for key, value in tags.items()}


@router.post("/upload", response_model=UploadResponse, responses=_ERROR_RESPONSES)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    metadata: Optional[str] = Form(None),
    service: FileService = Depends(get_file_service),
):
    """
    Store the uploaded file as a chunked blob. The file is read into memory
    first, never more than one byte past the configured upload limit.
    """
    if file is None:
        raise InvalidInput("No file provided")
    tags = _parse_tags(metadata)
    limit = service.max_upload_bytes
    if limit is None:
        data = await file.read()
    else:
        data = await file.read(limit + 1)
        if len(data) > limit:
            raise PayloadTooLarge(f"File exceeds the {limit} byte upload limit")
    entry = await run_in_threadpool(
        service.upload,
        data,
        filename=file.filename or "upload",
        content_type=file.content_type,
        metadata=tags,
    )
    return UploadResponse(
        fileId=entry.id, filename=entry.filename, contentType=entry.content_type
    )


@router.get("/files", response_model=list[FileInfo])
def list_files(service: FileService = Depends(get_file_service)):
    return [FileInfo.from_entry(entry) for entry in service.list_files()]


@router.get("/files/{file_id}", responses=_ERROR_RESPONSES)
def get_file(
    file_id: str,
    download: Optional[str] = Query(None, description="\"true\" sends an attachment"),
    service: FileService = Depends(get_file_service),
):
    result = service.open_download(file_id, as_attachment=download == "true")
    return StreamingResponse(
        result.chunks, media_type=result.media_type, headers=result.headers
    )


@router.delete("/files/{file_id}", response_model=DeleteResponse, responses=_ERROR_RESPONSES)
def delete_file(file_id: str, service: FileService = Depends(get_file_service)):
    service.delete(file_id)
    return DeleteResponse(message="Deleted")


@router.get("/share/{file_id}", response_model=ShareResponse, responses=_ERROR_RESPONSES)
def share_file(file_id: str, service: FileService = Depends(get_file_service)):
    return ShareResponse(shareUrl=service.share_url(file_id))

"""
File storage endpoints.

Uploads go to MinIO under a generated name and are served back without
authentication so clients can embed them directly.
"""
import logging
import os
import random
import time
from typing import Iterator
from fastapi import APIRouter, Depends, File, UploadFile, HTTPException, status
from fastapi.responses import StreamingResponse
import pybreaker

from api.dependencies import get_current_user
from api.metrics import file_uploads_total, file_upload_size_bytes
from api.schemas import FileInfoResponse, FileUploadResponse
from core.config import settings
from core.exceptions import NotFound, PayloadTooLarge, ServiceUnavailable, ValidationFailed
from db.models import MessageType, User
from services.minio_client import get_minio_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["Files"])

STREAM_CHUNK_SIZE = 32 * 1024

SERVE_HEADERS = {
    "Content-Disposition": "inline",
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "public, max-age=3600",
    "Access-Control-Allow-Origin": "*",
}


def generate_object_name(original_name: str) -> str:
    """file-<epoch millis>-<random 9 digits><original extension>"""
    _, ext = os.path.splitext(original_name or "")
    return f"file-{int(time.time() * 1000)}-{random.randint(0, 999_999_999):09d}{ext.lower()}"


def file_url_for(object_name: str) -> str:
    return f"/api/files/{object_name}"


def message_type_for(mimetype: str) -> MessageType:
    """Guess the message type of an attachment from its MIME type."""
    major = (mimetype or "").split("/", 1)[0]
    if major == "image":
        return MessageType.IMAGE
    if major == "video":
        return MessageType.VIDEO
    if major == "audio":
        return MessageType.AUDIO
    return MessageType.FILE


def _validate_object_name(filename: str) -> None:
    if not filename or "/" in filename or "\\" in filename or filename.startswith("."):
        raise NotFound("File not found")


def store_upload(upload) -> dict:
    """
    Store an uploaded file in MinIO.

    Args:
        upload: FastAPI/Starlette UploadFile

    Returns:
        Dictionary with filename, original_name, size, mimetype and url

    Raises:
        ValidationFailed: no file was sent
        PayloadTooLarge: file exceeds the configured limit
        ServiceUnavailable: object storage is down
    """
    if upload is None or not upload.filename:
        raise ValidationFailed("No file uploaded")

    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)

    if size > settings.max_upload_bytes:
        file_uploads_total.labels(status="too_large", instance="api").inc()
        raise PayloadTooLarge(f"File too large. Maximum size is {settings.max_upload_bytes // (1024 * 1024)}MB")

    object_name = generate_object_name(upload.filename)
    mimetype = upload.content_type or "application/octet-stream"

    try:
        get_minio_client().put_object(object_name, upload.file, size, content_type=mimetype)
    except pybreaker.CircuitBreakerError:
        file_uploads_total.labels(status="unavailable", instance="api").inc()
        raise ServiceUnavailable("File storage temporarily unavailable")
    except Exception as e:
        logger.error(f"File upload failed for {upload.filename}: {e}", exc_info=True)
        file_uploads_total.labels(status="failed", instance="api").inc()
        raise ServiceUnavailable("File upload failed")

    file_uploads_total.labels(status="success", instance="api").inc()
    file_upload_size_bytes.labels(instance="api").observe(size)
    logger.info(f"Stored upload {upload.filename} as {object_name} ({size} bytes)")

    return {
        "filename": object_name,
        "original_name": upload.filename,
        "size": size,
        "mimetype": mimetype,
        "url": file_url_for(object_name),
    }


@router.post("/upload", response_model=FileUploadResponse)
def upload_file(file: UploadFile = File(...), current_user: User = Depends(get_current_user)):
    """
    Upload a file (multipart field ``file``, at most 10MB).

    Returns:
        Stored file name, original name, size, MIME type and download URL

    Raises:
        PayloadTooLarge: 413 when the file exceeds the limit
        ServiceUnavailable: 503 when object storage is unavailable
    """
    return store_upload(file)


@router.get("/info/{filename}", response_model=FileInfoResponse)
def file_info(filename: str, current_user: User = Depends(get_current_user)):
    _validate_object_name(filename)
    try:
        stat = get_minio_client().stat_object(filename)
    except pybreaker.CircuitBreakerError:
        raise ServiceUnavailable("File storage temporarily unavailable")
    except Exception as e:
        logger.error(f"File stat failed for {filename}: {e}", exc_info=True)
        raise ServiceUnavailable("File storage temporarily unavailable")

    if stat is None:
        raise NotFound("File not found")

    return {
        "filename": filename,
        "size": stat["size"],
        "content_type": stat["content_type"],
        "modified": stat["last_modified"],
    }


def _iter_object(response) -> Iterator[bytes]:
    try:
        for chunk in response.stream(STREAM_CHUNK_SIZE):
            yield chunk
    finally:
        response.close()
        response.release_conn()


@router.get("/{filename}")
def serve_file(filename: str):
    """
    Stream a stored file. No authentication.

    Raises:
        HTTPException: 404 if the file does not exist
    """
    _validate_object_name(filename)
    client = get_minio_client()
    try:
        stat = client.stat_object(filename)
        response = client.get_object(filename) if stat else None
    except pybreaker.CircuitBreakerError:
        raise ServiceUnavailable("File storage temporarily unavailable")
    except Exception as e:
        logger.error(f"File read failed for {filename}: {e}", exc_info=True)
        raise ServiceUnavailable("File storage temporarily unavailable")

    if response is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    headers = dict(SERVE_HEADERS)
    headers["Content-Length"] = str(stat["size"])
    return StreamingResponse(
        _iter_object(response),
        media_type=stat["content_type"] or "application/octet-stream",
        headers=headers
    )

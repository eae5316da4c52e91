"""tus 1.0 endpoints (core, creation, termination, expiration) over the buffered upload store."""

import logging
from datetime import datetime
from datetime import timezone
from email.utils import format_datetime
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette import status

from buffered_tus.config import Config
from buffered_tus.dependencies import get_config
from buffered_tus.dependencies import get_store
from buffered_tus.errors import DurableStoreError
from buffered_tus.errors import InvalidUpload
from buffered_tus.errors import LockTimeout
from buffered_tus.errors import OffsetMismatch
from buffered_tus.errors import SessionNotFound
from buffered_tus.errors import UploadLengthExceeded
from buffered_tus.store import DEFAULT_CONTENT_TYPE
from buffered_tus.store import BufferedUploadStore


logger = logging.getLogger(__name__)
router = APIRouter(tags=["tus"])

TUS_VERSION = "1.0.0"
TUS_EXTENSIONS = "creation,termination,expiration"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"
LOCK_RETRY_AFTER_SECONDS = "1"


def tus_response(status_code: int, headers: Optional[dict[str, str]] = None, content: str = "") -> Response:
    response_headers = {"Tus-Resumable": TUS_VERSION}
    if headers:
        response_headers.update(headers)
    return Response(content=content, status_code=status_code, headers=response_headers)


def format_expires(expires: datetime) -> str:
    return format_datetime(expires.astimezone(timezone.utc), usegmt=True)


def parse_non_negative_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip().isdigit():
        return None
    return int(value.strip())


def check_tus_resumable(request: Request) -> Optional[Response]:
    if request.headers.get("Tus-Resumable") != TUS_VERSION:
        return tus_response(status.HTTP_412_PRECONDITION_FAILED, {"Tus-Version": TUS_VERSION})
    return None


@router.options("")
async def tus_options(config: Config = Depends(get_config)) -> Response:
    headers = {"Tus-Version": TUS_VERSION, "Tus-Extension": TUS_EXTENSIONS}
    if config.tus_max_size_bytes > 0:
        headers["Tus-Max-Size"] = str(config.tus_max_size_bytes)
    return tus_response(status.HTTP_204_NO_CONTENT, headers)


@router.post("")
async def create_upload(
    request: Request,
    config: Config = Depends(get_config),
    store: BufferedUploadStore = Depends(get_store),
) -> Response:
    if (error := check_tus_resumable(request)) is not None:
        return error

    if request.headers.get("Upload-Defer-Length") is not None:
        return tus_response(status.HTTP_400_BAD_REQUEST, content="Upload-Defer-Length is not supported")

    upload_length = parse_non_negative_int(request.headers.get("Upload-Length"))
    if upload_length is None:
        return tus_response(status.HTTP_400_BAD_REQUEST, content="Missing or invalid Upload-Length")

    if config.tus_max_size_bytes > 0 and upload_length > config.tus_max_size_bytes:
        return tus_response(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    try:
        upload_id = await store.create_upload(upload_length, request.headers.get("Upload-Metadata"))
        expires = await store.get_expiration(upload_id)
    except DurableStoreError as e:
        logger.error(f"Failed to create upload: {e}", exc_info=True)
        return tus_response(status.HTTP_500_INTERNAL_SERVER_ERROR)

    headers = {"Location": str(request.url_for("get_upload_offset", upload_id=upload_id))}
    if expires is not None:
        headers["Upload-Expires"] = format_expires(expires)

    logger.info(f"Created upload {upload_id} with length {upload_length}")
    return tus_response(status.HTTP_201_CREATED, headers)


@router.head("/{upload_id}", name="get_upload_offset")
async def head_upload(
    upload_id: str,
    request: Request,
    store: BufferedUploadStore = Depends(get_store),
) -> Response:
    if (error := check_tus_resumable(request)) is not None:
        return error

    upload_length = await store.get_upload_length(upload_id)
    if upload_length is None:
        return tus_response(status.HTTP_404_NOT_FOUND, {"Cache-Control": "no-store"})

    offset = await store.get_offset(upload_id)
    headers = {
        "Upload-Offset": str(offset),
        "Upload-Length": str(upload_length),
        "Cache-Control": "no-store",
    }
    metadata_header = await store.get_metadata_header(upload_id)
    if metadata_header:
        headers["Upload-Metadata"] = metadata_header
    if offset < upload_length:
        expires = await store.get_expiration(upload_id)
        if expires is not None:
            headers["Upload-Expires"] = format_expires(expires)

    return tus_response(status.HTTP_200_OK, headers)


@router.patch("/{upload_id}")
async def append_upload(
    upload_id: str,
    request: Request,
    store: BufferedUploadStore = Depends(get_store),
) -> Response:
    if (error := check_tus_resumable(request)) is not None:
        return error

    content_type = (request.headers.get("Content-Type") or "").split(";")[0].strip().lower()
    if content_type != OFFSET_CONTENT_TYPE:
        return tus_response(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE)

    expected_offset = parse_non_negative_int(request.headers.get("Upload-Offset"))
    if expected_offset is None:
        return tus_response(status.HTTP_400_BAD_REQUEST, content="Missing or invalid Upload-Offset")

    try:
        await store.append_data(upload_id, request.stream(), expected_offset=expected_offset)
    except SessionNotFound:
        return tus_response(status.HTTP_404_NOT_FOUND)
    except OffsetMismatch as e:
        logger.info(f"Rejected append: {e}")
        return tus_response(status.HTTP_409_CONFLICT)
    except UploadLengthExceeded as e:
        logger.info(f"Rejected append: {e}")
        return tus_response(status.HTTP_400_BAD_REQUEST, content="Upload-Length exceeded")
    except LockTimeout as e:
        logger.warning(f"Append lock timeout: {e}")
        return tus_response(status.HTTP_423_LOCKED, {"Retry-After": LOCK_RETRY_AFTER_SECONDS})
    except DurableStoreError as e:
        logger.error(f"Append failed for upload {upload_id}: {e}", exc_info=True)
        return tus_response(status.HTTP_500_INTERNAL_SERVER_ERROR)

    headers = {"Upload-Offset": str(await store.get_offset(upload_id))}
    expires = await store.get_expiration(upload_id)
    if expires is not None:
        headers["Upload-Expires"] = format_expires(expires)
    return tus_response(status.HTTP_204_NO_CONTENT, headers)


@router.delete("/{upload_id}")
async def delete_upload(
    upload_id: str,
    request: Request,
    store: BufferedUploadStore = Depends(get_store),
) -> Response:
    if (error := check_tus_resumable(request)) is not None:
        return error

    try:
        await store.delete_upload(upload_id)
    except LockTimeout as e:
        logger.warning(f"Delete lock timeout: {e}")
        return tus_response(status.HTTP_423_LOCKED, {"Retry-After": LOCK_RETRY_AFTER_SECONDS})
    except DurableStoreError as e:
        logger.error(f"Delete failed for upload {upload_id}: {e}", exc_info=True)
        return tus_response(status.HTTP_500_INTERNAL_SERVER_ERROR)

    return tus_response(status.HTTP_204_NO_CONTENT)


@router.get("/{upload_id}")
async def download_upload(
    upload_id: str,
    store: BufferedUploadStore = Depends(get_store),
) -> Response:
    """Stream a completed upload back to the client."""
    try:
        stream = await store.get_content(upload_id)
    except SessionNotFound:
        return tus_response(status.HTTP_404_NOT_FOUND)
    except InvalidUpload:
        return tus_response(status.HTTP_409_CONFLICT, content="Upload is not complete")

    upload_length = await store.get_upload_length(upload_id)
    metadata = await store.get_metadata(upload_id) or {}
    headers = {"Tus-Resumable": TUS_VERSION, "Content-Length": str(upload_length)}
    return StreamingResponse(
        stream,
        media_type=metadata.get("contentType") or metadata.get("filetype") or DEFAULT_CONTENT_TYPE,
        headers=headers,
    )

"""Resolve a completed resumable upload into the details needed to consume it."""

import mimetypes
import os

from buffered_tus.errors import InvalidUpload
from buffered_tus.errors import SessionNotFound
from buffered_tus.models import UploadInfo
from buffered_tus.store import DEFAULT_CONTENT_TYPE
from buffered_tus.store import BufferedUploadStore


async def get_upload_info(store: BufferedUploadStore, upload_id: str, *, bucket: str) -> UploadInfo:
    """Return info for a completed upload.

    Requires a non-blank ``filename`` metadata entry with an extension. The content type
    comes from ``contentType`` metadata, then from the filename, then falls back to
    ``application/octet-stream``.

    Raises:
        SessionNotFound: the upload does not exist (or its session has expired)
        InvalidUpload: metadata is missing/invalid or the upload is not complete
    """
    if not upload_id or not upload_id.strip():
        raise ValueError("upload_id is required")
    upload_id = upload_id.strip()

    metadata = await store.get_metadata(upload_id)
    if metadata is None:
        raise SessionNotFound(upload_id)

    if "filename" not in metadata:
        raise InvalidUpload(f"Resumable upload '{upload_id}' is missing 'filename' metadata")

    file_name = metadata["filename"].strip()
    if not file_name:
        raise InvalidUpload(f"Resumable upload '{upload_id}' has an invalid filename")

    upload_length = await store.get_upload_length(upload_id)
    upload_offset = await store.get_offset(upload_id)
    if upload_length is None or upload_offset != upload_length:
        raise InvalidUpload(f"Resumable upload '{upload_id}' is not complete")

    extension = os.path.splitext(file_name)[1].strip()
    if not extension or extension == ".":
        raise InvalidUpload(f"Resumable upload '{upload_id}' has no valid file extension")

    content_type = (metadata.get("contentType") or "").strip()
    if not content_type:
        content_type = mimetypes.guess_type(file_name)[0] or DEFAULT_CONTENT_TYPE

    return UploadInfo(
        upload_id=upload_id,
        original_file_name=file_name,
        extension=extension,
        content_type=content_type,
        length=upload_length,
        bucket=bucket,
        key=store.file_key(upload_id),
    )

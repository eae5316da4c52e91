from datetime import datetime
from datetime import timezone

from pydantic import BaseModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(BaseModel):
    """Per-upload record kept in Redis and mirrored into the object store."""

    upload_length: int
    metadata: dict[str, str] = Field(default_factory=dict)
    expires: datetime
    multipart_upload_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PartRecord(BaseModel):
    part_number: int
    etag: str


class UploadInfo(BaseModel):
    upload_id: str
    original_file_name: str
    extension: str
    content_type: str
    length: int
    bucket: str
    key: str

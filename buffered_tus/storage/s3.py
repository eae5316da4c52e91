"""S3-compatible object store adapter.

boto3 is synchronous; every call runs in a worker thread via ``asyncio.to_thread``
so the event loop is never blocked on a network round trip.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any
from typing import AsyncIterator
from typing import Callable
from typing import Optional
from typing import TypeVar

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError

from buffered_tus.config import S3_MIN_PART_SIZE_BYTES
from buffered_tus.config import Config
from buffered_tus.errors import DurableStoreError
from buffered_tus.models import PartRecord


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_READ_CHUNK = 1024 * 1024

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def create_s3_client(config: Config) -> Any:
    """Build a boto3 S3 client from application config."""
    boto_cfg = BotoConfig(retries={"max_attempts": 1, "mode": "standard"}, s3={"addressing_style": "path"})
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=config.s3_endpoint_url or None,
        aws_access_key_id=config.s3_access_key_id or None,
        aws_secret_access_key=config.s3_secret_access_key or None,
        region_name=config.s3_region,
        config=boto_cfg,
    )


def _error_code(exc: Exception) -> Optional[str]:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", "")) or None
    return None


class S3ObjectStore:
    min_part_size = S3_MIN_PART_SIZE_BYTES

    def __init__(self, client: Any, bucket_name: str) -> None:
        if not bucket_name:
            raise ValueError("bucket_name is required")
        self.client = client
        self.bucket_name = bucket_name

    async def _call(self, operation: str, key: str, func: Callable[..., T], **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(func, Bucket=self.bucket_name, Key=key, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise DurableStoreError(operation, key, str(e), code=_error_code(e)) from e

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        await self._call(
            "put_object",
            key,
            self.client.put_object,
            Body=io.BytesIO(data),
            ContentLength=len(data),
            ContentType=content_type,
            Metadata=dict(metadata or {}),
        )
        logger.debug(f"S3: put object key={key} size={len(data)}")

    async def initiate_multipart(self, key: str, *, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        resp = await self._call(
            "create_multipart_upload", key, self.client.create_multipart_upload, ContentType=content_type
        )
        return str(resp["UploadId"])

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        resp = await self._call(
            "upload_part",
            key,
            self.client.upload_part,
            UploadId=upload_id,
            PartNumber=int(part_number),
            Body=io.BytesIO(data),
            ContentLength=len(data),
        )
        return str(resp["ETag"])

    async def complete_multipart(self, key: str, upload_id: str, parts: list[PartRecord]) -> None:
        ordered = sorted(parts, key=lambda p: p.part_number)
        await self._call(
            "complete_multipart_upload",
            key,
            self.client.complete_multipart_upload,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in ordered]},
        )

    async def abort_multipart(self, key: str, upload_id: str) -> None:
        await self._call("abort_multipart_upload", key, self.client.abort_multipart_upload, UploadId=upload_id)

    async def delete_object(self, key: str) -> None:
        await self._call("delete_object", key, self.client.delete_object)

    async def _head(self, key: str) -> Optional[dict[str, Any]]:
        try:
            return await self._call("head_object", key, self.client.head_object)
        except DurableStoreError as e:
            if e.code in _NOT_FOUND_CODES:
                return None
            raise

    async def get_object_metadata(self, key: str) -> Optional[dict[str, str]]:
        resp = await self._head(key)
        if resp is None:
            return None
        return {str(k).lower(): str(v) for k, v in (resp.get("Metadata") or {}).items()}

    async def set_object_metadata(self, key: str, fields: dict[str, str]) -> None:
        """Merge ``fields`` into the object's user metadata (server-side self copy)."""
        resp = await self._head(key)
        if resp is None:
            raise DurableStoreError("copy_object", key, "object does not exist", code="NoSuchKey")
        current = {str(k).lower(): str(v) for k, v in (resp.get("Metadata") or {}).items()}
        await self._call(
            "copy_object",
            key,
            self.client.copy_object,
            CopySource={"Bucket": self.bucket_name, "Key": key},
            ContentType=resp.get("ContentType") or DEFAULT_CONTENT_TYPE,
            Metadata={**current, **fields},
            MetadataDirective="REPLACE",
        )

    async def list_objects(self, prefix: str) -> list[str]:
        keys: list[str] = []
        token: Optional[str] = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket_name, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = await asyncio.to_thread(self.client.list_objects_v2, **kwargs)
            except (ClientError, BotoCoreError) as e:
                raise DurableStoreError("list_objects_v2", prefix, str(e), code=_error_code(e)) from e

            keys.extend(str(obj["Key"]) for obj in resp.get("Contents", []) or [])
            if not resp.get("IsTruncated"):
                break
            token = resp.get("NextContinuationToken")
        return keys

    async def get_object_stream(self, key: str, *, chunk_size: int = DEFAULT_READ_CHUNK) -> AsyncIterator[bytes]:
        resp = await self._call("get_object", key, self.client.get_object)
        body = resp["Body"]
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(body.close)

"""Buffered resumable-upload store.

Appends are buffered in Redis until at least ``min_part_size`` bytes are available,
then flushed to the object store as parts of a multipart upload. When the declared
length is reached the upload is finalized: the multipart upload is completed, or,
for uploads that never reached the part threshold, the whole object is written with
a single put.

Redis holds four keys per upload (session, buffer, committed offset, part list).
Every append and delete runs under a per-upload Redis lock; reads are lock-free and
clamp the reported offset to the declared length. Each accepted append that leaves
the upload incomplete pushes its expiration out by the configured window.

The session is mirrored into the object store under ``metadata_prefix`` so that
expiration can be driven by listing the object store alone, independent of Redis
retention.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import AsyncIterator
from typing import Optional

from buffered_tus.cache import RedisUploadStateCache
from buffered_tus.errors import DurableStoreError
from buffered_tus.errors import InvalidUpload
from buffered_tus.errors import OffsetMismatch
from buffered_tus.errors import SessionNotFound
from buffered_tus.errors import UploadLengthExceeded
from buffered_tus.locks import RedisLockService
from buffered_tus.logging_config import upload_id_context
from buffered_tus.metadata import parse_metadata_header
from buffered_tus.metadata import serialize_metadata_header
from buffered_tus.models import PartRecord
from buffered_tus.models import UploadSession
from buffered_tus.models import utc_now
from buffered_tus.monitoring import get_metrics_collector
from buffered_tus.storage.base import ObjectStore
from buffered_tus.utils import Payload
from buffered_tus.utils import read_payload


logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Mirrored metadata object fields
META_UPLOAD_LENGTH = "tus-upload-length"
META_EXPIRES = "tus-expires"
META_MULTIPART_UPLOAD_ID = "tus-multipart-upload-id"
META_COMPLETED = "tus-completed"

# Redis state outlives the upload's own expiration so the sweeper can still abort it
STATE_TTL_GRACE = timedelta(minutes=10)


def parse_expires(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BufferedUploadStore:
    def __init__(
        self,
        *,
        redis_client: Any,
        lock_service: RedisLockService,
        object_store: ObjectStore,
        file_prefix: str,
        metadata_prefix: str,
        min_part_size_bytes: int,
        expiration_minutes: int,
        lock_timeout_seconds: float = 30.0,
    ) -> None:
        if min_part_size_bytes < object_store.min_part_size:
            raise ValueError(
                f"Minimum part size must be at least {object_store.min_part_size} bytes, got {min_part_size_bytes}"
            )
        if expiration_minutes <= 0:
            raise ValueError("expiration_minutes must be greater than zero")

        self.lock_service = lock_service
        self.object_store = object_store
        self.file_prefix = file_prefix
        self.metadata_prefix = metadata_prefix
        self.min_part_size = int(min_part_size_bytes)
        self.expiration = timedelta(minutes=expiration_minutes)
        self.lock_timeout_seconds = float(lock_timeout_seconds)
        self.state = RedisUploadStateCache(redis_client, grace=STATE_TTL_GRACE)

        logger.info(
            f"BufferedUploadStore initialized: min_part={self.min_part_size} bytes, "
            f"expiration={expiration_minutes}min, lock_timeout={self.lock_timeout_seconds}s"
        )

    def file_key(self, upload_id: str) -> str:
        return f"{self.file_prefix}{upload_id}"

    def metadata_key(self, upload_id: str) -> str:
        return f"{self.metadata_prefix}{upload_id}"

    def _lock_name(self, upload_id: str) -> str:
        return f"tus:{upload_id}"

    @staticmethod
    def _content_type(session: UploadSession) -> str:
        return session.metadata.get("contentType") or session.metadata.get("filetype") or DEFAULT_CONTENT_TYPE

    # Session manager

    async def create_upload(self, upload_length: int, metadata_header: Optional[str] = None) -> str:
        if upload_length < 0:
            raise ValueError("upload_length must not be negative")

        upload_id = uuid.uuid4().hex
        token = upload_id_context.set(upload_id)
        try:
            session = UploadSession(
                upload_length=int(upload_length),
                metadata=parse_metadata_header(metadata_header),
                expires=utc_now() + self.expiration,
            )
            await self.state.init_upload(upload_id, session)

            await self.object_store.put_object(
                self.metadata_key(upload_id),
                session.model_dump_json().encode("utf-8"),
                content_type="application/json",
                metadata={
                    META_UPLOAD_LENGTH: str(session.upload_length),
                    META_EXPIRES: session.expires.isoformat(),
                },
            )
            get_metrics_collector().record_upload_created()
            logger.debug(f"Created upload: length={session.upload_length}, expires={session.expires.isoformat()}")

            # Nothing will ever be appended to an empty upload
            if session.upload_length == 0:
                await self._finalize(upload_id, session, b"")

            return upload_id
        finally:
            upload_id_context.reset(token)

    async def exists(self, upload_id: str) -> bool:
        return await self.state.get_session(upload_id) is not None

    async def get_upload_length(self, upload_id: str) -> Optional[int]:
        session = await self.state.get_session(upload_id)
        return session.upload_length if session else None

    async def get_metadata_header(self, upload_id: str) -> str:
        session = await self.state.get_session(upload_id)
        if session is None:
            return ""
        return serialize_metadata_header(session.metadata)

    async def get_metadata(self, upload_id: str) -> Optional[dict[str, str]]:
        session = await self.state.get_session(upload_id)
        return dict(session.metadata) if session else None

    async def get_offset(self, upload_id: str) -> int:
        committed, buffered, session = await self.state.get_offset_state(upload_id)
        offset = committed + buffered
        if session is not None:
            offset = min(offset, session.upload_length)
        logger.debug(
            f"get_offset: upload_id={upload_id} committed={committed} buffered={buffered} offset={offset}"
        )
        return offset

    async def get_expiration(self, upload_id: str) -> Optional[datetime]:
        session = await self.state.get_session(upload_id)
        return session.expires if session else None

    async def set_expiration(self, upload_id: str, expires: datetime) -> None:
        session = await self.state.get_session(upload_id)
        if session is None:
            return
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)

        session.expires = expires
        await self.state.refresh(upload_id, session)
        await self.object_store.set_object_metadata(self.metadata_key(upload_id), {META_EXPIRES: expires.isoformat()})

    async def _slide_expiration(self, upload_id: str, session: UploadSession) -> None:
        session.expires = utc_now() + self.expiration
        await self.state.refresh(upload_id, session)
        await self._mirror_fields(upload_id, {META_EXPIRES: session.expires.isoformat()})

    # Append / flush

    async def append_data(self, upload_id: str, payload: Payload, *, expected_offset: Optional[int] = None) -> int:
        """Append ``payload`` to the upload and return the number of bytes accepted from it.

        When ``expected_offset`` is given it is checked against the current offset after
        the lock is taken, so a caller that lost a race sees ``OffsetMismatch`` instead
        of writing at a stale position.
        """
        token = upload_id_context.set(upload_id)
        try:

            async def _locked() -> int:
                return await self._append_locked(upload_id, payload, expected_offset)

            return await self.lock_service.run_with_lock(
                self._lock_name(upload_id), self.lock_timeout_seconds, _locked
            )
        finally:
            upload_id_context.reset(token)

    async def _append_locked(self, upload_id: str, payload: Payload, expected_offset: Optional[int]) -> int:
        session = await self.state.get_session(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)

        committed = await self.state.get_committed(upload_id)
        remainder = await self.state.get_buffer(upload_id)
        current = committed + len(remainder)

        if expected_offset is not None and int(expected_offset) != current:
            raise OffsetMismatch(upload_id, int(expected_offset), current)

        incoming = await read_payload(payload)
        if not incoming:
            return 0

        if current + len(incoming) > session.upload_length:
            raise UploadLengthExceeded(upload_id, session.upload_length, current + len(incoming))

        combined = remainder + incoming if remainder else incoming
        processed = 0

        part_size = self.min_part_size
        while len(combined) - processed >= part_size and committed + part_size <= session.upload_length:
            await self._flush_part(upload_id, session, combined[processed : processed + part_size], committed)
            committed += part_size
            processed += part_size

        tail = combined[processed:]
        if committed + len(tail) == session.upload_length:
            await self._finalize(upload_id, session, tail)
        else:
            if tail:
                await self.state.set_buffer(upload_id, tail, session)
            else:
                await self.state.clear_buffer(upload_id)
            await self._slide_expiration(upload_id, session)

        get_metrics_collector().record_append(len(incoming))
        return len(incoming)

    async def _ensure_multipart(self, upload_id: str, session: UploadSession) -> str:
        if session.multipart_upload_id is not None:
            return session.multipart_upload_id

        multipart_upload_id = await self.object_store.initiate_multipart(
            self.file_key(upload_id), content_type=self._content_type(session)
        )
        session.multipart_upload_id = multipart_upload_id
        await self.state.set_session(upload_id, session)
        await self._mirror_fields(upload_id, {META_MULTIPART_UPLOAD_ID: multipart_upload_id})

        get_metrics_collector().record_multipart_operation("initiate_upload")
        logger.info(f"Initiated multipart upload: multipart_upload_id={multipart_upload_id}")
        return multipart_upload_id

    async def _upload_next_part(self, upload_id: str, multipart_upload_id: str, data: bytes) -> list[PartRecord]:
        parts = await self.state.get_parts(upload_id)
        part_number = len(parts) + 1
        etag = await self.object_store.upload_part(self.file_key(upload_id), multipart_upload_id, part_number, data)
        parts.append(PartRecord(part_number=part_number, etag=etag))
        get_metrics_collector().record_multipart_operation("upload_part", size_bytes=len(data))
        return parts

    async def _flush_part(self, upload_id: str, session: UploadSession, data: bytes, committed: int) -> None:
        multipart_upload_id = await self._ensure_multipart(upload_id, session)
        parts = await self._upload_next_part(upload_id, multipart_upload_id, data)

        new_committed = committed + len(data)
        # The old remainder is now inside a durable part and leaves the buffer in the same transaction
        await self.state.commit_part(upload_id, parts, new_committed, session)

        logger.info(f"Uploaded part {len(parts)}: {len(data)} bytes, committed={new_committed}")

    # Finalization

    async def _finalize(self, upload_id: str, session: UploadSession, tail: bytes) -> None:
        if session.multipart_upload_id is not None:
            if tail:
                parts = await self._upload_next_part(upload_id, session.multipart_upload_id, tail)
            else:
                parts = await self.state.get_parts(upload_id)
            await self.object_store.complete_multipart(self.file_key(upload_id), session.multipart_upload_id, parts)
            get_metrics_collector().record_multipart_operation("complete_upload")
            mode = "multipart"
            logger.info(f"Completed multipart upload: parts={len(parts)}")
        else:
            await self.object_store.put_object(
                self.file_key(upload_id), tail, content_type=self._content_type(session)
            )
            mode = "single"
            logger.info(f"Uploaded small file: size={len(tail)}")

        await self.state.mark_complete(upload_id, session)
        await self._mirror_fields(upload_id, {META_COMPLETED: "true"})

        get_metrics_collector().record_upload_completed(mode, session.upload_length)
        logger.info(f"Upload complete: total_size={session.upload_length}")

    async def _mirror_fields(self, upload_id: str, fields: dict[str, str]) -> None:
        """Best-effort update of the mirrored metadata object."""
        try:
            await self.object_store.set_object_metadata(self.metadata_key(upload_id), fields)
        except DurableStoreError as e:
            logger.warning(f"Mirrored metadata update failed (best-effort): fields={sorted(fields)}: {e}")

    # Content

    async def get_content(self, upload_id: str) -> AsyncIterator[bytes]:
        session = await self.state.get_session(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)
        if await self.get_offset(upload_id) != session.upload_length:
            raise InvalidUpload(f"Resumable upload '{upload_id}' is not complete")
        return self.object_store.get_object_stream(self.file_key(upload_id))

    # Delete / abort

    async def delete_upload(self, upload_id: str) -> bool:
        """Abort, delete and forget an upload. Returns False when there was nothing to delete."""
        token = upload_id_context.set(upload_id)
        try:

            async def _locked() -> bool:
                return await self._delete_locked(upload_id, "delete")

            return await self.lock_service.run_with_lock(
                self._lock_name(upload_id), self.lock_timeout_seconds, _locked
            )
        finally:
            upload_id_context.reset(token)

    async def _delete_locked(self, upload_id: str, reason: str) -> bool:
        session = await self.state.get_session(upload_id)
        multipart_upload_id = session.multipart_upload_id if session else None

        if session is None:
            # Redis may have evicted the session; the mirrored object still knows the multipart id
            mirrored = await self.object_store.get_object_metadata(self.metadata_key(upload_id))
            if mirrored is None:
                await self.state.delete_all(upload_id)
                logger.debug("Delete requested for unknown upload, nothing to do")
                return False
            multipart_upload_id = mirrored.get(META_MULTIPART_UPLOAD_ID) or None

        if multipart_upload_id:
            try:
                await self.object_store.abort_multipart(self.file_key(upload_id), multipart_upload_id)
                get_metrics_collector().record_multipart_operation("abort_upload")
            except DurableStoreError as e:
                # Already completed or aborted
                if e.code != "NoSuchUpload":
                    raise

        await self.object_store.delete_object(self.file_key(upload_id))
        await self.object_store.delete_object(self.metadata_key(upload_id))
        await self.state.delete_all(upload_id)

        get_metrics_collector().record_upload_deleted(reason)
        logger.debug(f"Deleted upload: reason={reason}")
        return True

    async def expire_upload(self, upload_id: str) -> bool:
        """Delete an upload reported as expired by the mirrored metadata.

        Redis wins over the mirror while it still holds the session: a completed upload,
        or one whose expiration has since moved forward, is kept and its mirror is
        rewritten. Returns True only when the upload was deleted.
        """
        token = upload_id_context.set(upload_id)
        try:

            async def _locked() -> bool:
                session = await self.state.get_session(upload_id)
                if session is not None:
                    committed = await self.state.get_committed(upload_id)
                    if committed >= session.upload_length:
                        logger.info("Expired mirror points at a completed upload, keeping it")
                        await self._mirror_fields(upload_id, {META_COMPLETED: "true"})
                        return False
                    if session.expires >= utc_now():
                        logger.info(f"Upload still active until {session.expires.isoformat()}, keeping it")
                        await self._mirror_fields(upload_id, {META_EXPIRES: session.expires.isoformat()})
                        return False
                return await self._delete_locked(upload_id, "expired")

            return await self.lock_service.run_with_lock(
                self._lock_name(upload_id), self.lock_timeout_seconds, _locked
            )
        finally:
            upload_id_context.reset(token)

    # Expiration

    async def list_expired(self) -> list[str]:
        """Ids of incomplete uploads whose mirrored expiration has passed."""
        now = utc_now()
        expired: list[str] = []

        for key in await self.object_store.list_objects(self.metadata_prefix):
            upload_id = key[len(self.metadata_prefix) :]
            if not upload_id or "/" in upload_id:
                continue

            fields = await self.object_store.get_object_metadata(key)
            if fields is None or fields.get(META_COMPLETED) == "true":
                continue

            expires = parse_expires(fields.get(META_EXPIRES))
            if expires is None:
                logger.warning(f"Skipping metadata object without valid expiration: key={key}")
                continue
            if expires < now:
                expired.append(upload_id)

        return expired

    async def remove_expired(self) -> int:
        expired = await self.list_expired()
        count = 0

        for upload_id in expired:
            try:
                if await self.expire_upload(upload_id):
                    count += 1
            except Exception as e:
                logger.error(f"Failed to delete expired upload: upload_id={upload_id}: {e}", exc_info=True)

        if expired:
            logger.info(f"Removed {count}/{len(expired)} expired uploads")
        return count

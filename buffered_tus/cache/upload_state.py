from __future__ import annotations

import json as _json
from datetime import timedelta
from typing import Any
from typing import Optional

from pydantic import TypeAdapter

from buffered_tus.models import PartRecord
from buffered_tus.models import UploadSession
from buffered_tus.models import utc_now


_PARTS_ADAPTER = TypeAdapter(list[PartRecord])


class RedisUploadStateCache:
    """Per-upload state for in-flight resumable uploads keyed by upload_id.

    Four keys per upload: session record, unflushed buffer, committed offset and the
    ordered part list. All four share one TTL derived from the session's expiration
    plus a grace period, and are refreshed together whenever the expiration moves.
    Writes that must be seen together go through a single MULTI/EXEC pipeline.
    """

    def __init__(self, redis_client: Any, *, grace: timedelta) -> None:
        self.redis = redis_client
        self.grace = grace

    def build_meta_key(self, upload_id: str) -> str:
        return f"tus:{upload_id}:meta"

    def build_buffer_key(self, upload_id: str) -> str:
        return f"tus:{upload_id}:buf"

    def build_committed_key(self, upload_id: str) -> str:
        return f"tus:{upload_id}:committed"

    def build_parts_key(self, upload_id: str) -> str:
        return f"tus:{upload_id}:parts"

    def ttl_for(self, session: UploadSession) -> int:
        remaining = max(session.expires - utc_now(), timedelta(0))
        return max(int((remaining + self.grace).total_seconds()), 1)

    @staticmethod
    def _dump_parts(parts: list[PartRecord]) -> str:
        return _json.dumps([p.model_dump() for p in parts])

    # Session record
    async def get_session(self, upload_id: str) -> Optional[UploadSession]:
        raw = await self.redis.get(self.build_meta_key(upload_id))
        if not raw:
            return None
        return UploadSession.model_validate_json(raw)

    async def set_session(self, upload_id: str, session: UploadSession) -> None:
        await self.redis.setex(self.build_meta_key(upload_id), self.ttl_for(session), session.model_dump_json())

    async def refresh(self, upload_id: str, session: UploadSession) -> None:
        """Rewrite the session and move every key of the upload onto its TTL."""
        ttl = self.ttl_for(session)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(self.build_meta_key(upload_id), ttl, session.model_dump_json())
            pipe.expire(self.build_buffer_key(upload_id), ttl)
            pipe.expire(self.build_committed_key(upload_id), ttl)
            pipe.expire(self.build_parts_key(upload_id), ttl)
            await pipe.execute()

    # Buffer
    async def get_buffer(self, upload_id: str) -> bytes:
        result = await self.redis.get(self.build_buffer_key(upload_id))
        return result if isinstance(result, bytes) else b""

    async def buffer_length(self, upload_id: str) -> int:
        return int(await self.redis.strlen(self.build_buffer_key(upload_id)) or 0)

    async def set_buffer(self, upload_id: str, data: bytes, session: UploadSession) -> None:
        await self.redis.setex(self.build_buffer_key(upload_id), self.ttl_for(session), data)

    async def clear_buffer(self, upload_id: str) -> None:
        await self.redis.delete(self.build_buffer_key(upload_id))

    # Committed offset
    async def get_committed(self, upload_id: str) -> int:
        raw = await self.redis.get(self.build_committed_key(upload_id))
        return int(raw) if raw else 0

    async def get_offset_state(self, upload_id: str) -> tuple[int, int, Optional[UploadSession]]:
        """Committed offset, buffered length and session read in one transaction."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.get(self.build_committed_key(upload_id))
            pipe.strlen(self.build_buffer_key(upload_id))
            pipe.get(self.build_meta_key(upload_id))
            raw_committed, buffered, raw_session = await pipe.execute()

        session = UploadSession.model_validate_json(raw_session) if raw_session else None
        return int(raw_committed) if raw_committed else 0, int(buffered or 0), session

    # Part list
    async def get_parts(self, upload_id: str) -> list[PartRecord]:
        raw = await self.redis.get(self.build_parts_key(upload_id))
        if not raw:
            return []
        return _PARTS_ADAPTER.validate_json(raw)

    async def commit_part(
        self, upload_id: str, parts: list[PartRecord], committed: int, session: UploadSession
    ) -> None:
        """Record a flushed part: part list, committed offset and buffer removal land together."""
        ttl = self.ttl_for(session)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(self.build_parts_key(upload_id), ttl, self._dump_parts(parts))
            pipe.setex(self.build_committed_key(upload_id), ttl, str(int(committed)))
            pipe.delete(self.build_buffer_key(upload_id))
            await pipe.execute()

    async def init_upload(self, upload_id: str, session: UploadSession) -> None:
        """Write the session with an empty buffer, zero offset and empty part list."""
        ttl = self.ttl_for(session)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(self.build_meta_key(upload_id), ttl, session.model_dump_json())
            pipe.setex(self.build_buffer_key(upload_id), ttl, b"")
            pipe.setex(self.build_committed_key(upload_id), ttl, "0")
            pipe.setex(self.build_parts_key(upload_id), ttl, self._dump_parts([]))
            await pipe.execute()

    async def mark_complete(self, upload_id: str, session: UploadSession) -> None:
        """Committed offset jumps to the declared length; buffer and part list are dropped."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(self.build_committed_key(upload_id), self.ttl_for(session), str(session.upload_length))
            pipe.delete(self.build_buffer_key(upload_id), self.build_parts_key(upload_id))
            await pipe.execute()

    async def delete_all(self, upload_id: str) -> None:
        await self.redis.delete(
            self.build_buffer_key(upload_id),
            self.build_committed_key(upload_id),
            self.build_parts_key(upload_id),
            self.build_meta_key(upload_id),
        )

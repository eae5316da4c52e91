from __future__ import annotations

from typing import AsyncIterator
from typing import Optional
from typing import Protocol

from buffered_tus.models import PartRecord


class ObjectStore(Protocol):
    """Durable object store contract used by the upload engine.

    Writes are either one atomic object or a multipart upload whose non-final parts
    are at least ``min_part_size`` bytes. ``get_object_metadata`` returns ``None``
    for a missing key; every other failure raises ``DurableStoreError``.
    """

    min_part_size: int

    async def put_object(
        self, key: str, data: bytes, *, content_type: str = ..., metadata: Optional[dict[str, str]] = None
    ) -> None: ...

    async def initiate_multipart(self, key: str, *, content_type: str = ...) -> str: ...

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str: ...

    async def complete_multipart(self, key: str, upload_id: str, parts: list[PartRecord]) -> None: ...

    async def abort_multipart(self, key: str, upload_id: str) -> None: ...

    async def delete_object(self, key: str) -> None: ...

    async def get_object_metadata(self, key: str) -> Optional[dict[str, str]]: ...

    async def set_object_metadata(self, key: str, fields: dict[str, str]) -> None: ...

    async def list_objects(self, prefix: str) -> list[str]: ...

    def get_object_stream(self, key: str, *, chunk_size: int = ...) -> AsyncIterator[bytes]: ...

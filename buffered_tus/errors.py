"""Exceptions raised by the buffered upload store."""

from typing import Optional


class UploadStoreError(Exception):
    """Base class for upload store errors."""


class SessionNotFound(UploadStoreError):
    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"Upload session not found for upload_id={upload_id}")


class LockTimeout(UploadStoreError):
    """The per-upload lock could not be acquired within the acquire budget."""

    def __init__(self, lock_name: str, budget_seconds: float):
        self.lock_name = lock_name
        self.budget_seconds = budget_seconds
        super().__init__(f"Could not acquire distributed lock '{lock_name}' within {budget_seconds:.1f}s")


class DurableStoreError(UploadStoreError):
    """An object store call failed.

    ``code`` carries the backend error code (e.g. ``NoSuchUpload``) when one is known.
    """

    def __init__(self, operation: str, key: str, message: str, code: Optional[str] = None):
        self.operation = operation
        self.key = key
        self.code = code
        super().__init__(f"{operation} failed for key={key}: {message}")


class OffsetMismatch(UploadStoreError):
    def __init__(self, upload_id: str, expected: int, actual: int):
        self.upload_id = upload_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Offset mismatch for upload_id={upload_id}: client={expected}, server={actual}")


class UploadLengthExceeded(UploadStoreError):
    def __init__(self, upload_id: str, upload_length: int, attempted: int):
        self.upload_id = upload_id
        self.upload_length = upload_length
        self.attempted = attempted
        super().__init__(
            f"Append would exceed declared length for upload_id={upload_id}: {attempted} > {upload_length}"
        )


class InvalidUpload(UploadStoreError):
    """The upload exists but is not in a usable state (incomplete, missing metadata, ...)."""

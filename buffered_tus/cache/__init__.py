from .upload_state import RedisUploadStateCache


__all__ = [
    "RedisUploadStateCache",
]

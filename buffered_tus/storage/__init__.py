from buffered_tus.storage.base import ObjectStore
from buffered_tus.storage.s3 import S3ObjectStore
from buffered_tus.storage.s3 import create_s3_client


__all__ = [
    "ObjectStore",
    "S3ObjectStore",
    "create_s3_client",
]

"""Utility functions for the buffered tus service."""

import dataclasses
import logging
import os
import typing
from typing import Any
from typing import AsyncIterator
from typing import Callable
from typing import TypeVar
from typing import Union


T = TypeVar("T")

logger = logging.getLogger(__name__)

Payload = Union[bytes, bytearray, memoryview, AsyncIterator[bytes]]


def env(key: str, convert: Callable[[str], T] = typing.cast(Callable[[str], T], str), **kwargs: Any) -> T:
    """Load a value from environment variables with optional default and type conversion."""
    key, partition, default = key.partition(":")

    def default_factory(
        key_val: str = key, default_val: str = default, convert_func: Callable[[str], T] = convert
    ) -> T:
        if key_val in os.environ:
            return convert_func(os.environ[key_val])

        if partition == ":":
            return convert_func(default_val)

        raise KeyError(key_val)

    return typing.cast(T, dataclasses.field(default_factory=default_factory, **kwargs))


def as_bool(value: str) -> bool:
    return value.strip().lower() == "true"


async def read_payload(payload: Payload) -> bytes:
    """Materialize an append payload into a single bytes object.

    Accepts raw bytes or an async iterator of byte chunks (e.g. ``request.stream()``).
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)

    chunks = []
    chunk_count = 0
    async for chunk in payload:
        if chunk:
            chunks.append(chunk)
            chunk_count += 1

    body = b"".join(chunks)
    logger.debug(f"Read payload: {chunk_count} chunks, size: {len(body)} bytes")
    return body

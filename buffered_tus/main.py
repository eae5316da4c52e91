"""Main application module for the buffered tus upload service."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import redis.asyncio as async_redis
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi import Response
from fastapi.responses import JSONResponse

from buffered_tus.api.tus import router as tus_router
from buffered_tus.config import get_config
from buffered_tus.locks import RedisLockService
from buffered_tus.logging_config import setup_loki_logging
from buffered_tus.monitoring import MetricsCollector
from buffered_tus.monitoring import set_metrics_collector
from buffered_tus.storage import S3ObjectStore
from buffered_tus.storage import create_s3_client
from buffered_tus.store import BufferedUploadStore


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """FastAPI application lifespan handler."""
    try:
        app.state.config = get_config()
        config = app.state.config

        app.state.redis_client = async_redis.from_url(config.redis_url)
        logger.info("Redis client initialized")

        app.state.object_store = S3ObjectStore(create_s3_client(config), config.s3_bucket_name)
        logger.info(f"S3 object store initialized for bucket {config.s3_bucket_name}")

        app.state.metrics_collector = MetricsCollector()
        set_metrics_collector(app.state.metrics_collector)
        logger.info("Metrics collector initialized")

        app.state.lock_service = RedisLockService(app.state.redis_client, retry_delay_ms=config.tus_lock_retry_delay_ms)
        app.state.upload_store = BufferedUploadStore(
            redis_client=app.state.redis_client,
            lock_service=app.state.lock_service,
            object_store=app.state.object_store,
            file_prefix=config.tus_file_prefix,
            metadata_prefix=config.tus_metadata_prefix,
            min_part_size_bytes=config.tus_min_part_size_bytes,
            expiration_minutes=config.tus_expiration_minutes,
            lock_timeout_seconds=config.tus_lock_timeout_seconds,
        )
        logger.info("Upload store initialized")

        yield

    finally:
        try:
            if hasattr(app.state, "redis_client"):
                await app.state.redis_client.close()
                logger.info("Redis client closed")
        except Exception:
            logger.exception("Error shutting down Redis client")


def factory() -> FastAPI:
    """Factory function to create and configure the FastAPI application."""
    load_dotenv()
    config = get_config()
    setup_loki_logging(config, "api")

    app = FastAPI(
        title="Buffered tus",
        description="Resumable uploads buffered into S3 multipart uploads",
        lifespan=lifespan,
        debug=config.debug,
        default_response_class=Response,
    )

    @app.get("/health", include_in_schema=False, response_class=JSONResponse)
    async def health():
        """Health check endpoint for monitoring."""
        return JSONResponse(content={"status": "healthy"})

    app.include_router(tus_router, prefix="/files")

    return app

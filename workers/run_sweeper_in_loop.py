#!/usr/bin/env python3
import asyncio
import logging
import sys
import time
from pathlib import Path

import redis.asyncio as async_redis


sys.path.insert(0, str(Path(__file__).parent.parent))

from buffered_tus.config import get_config
from buffered_tus.locks import RedisLockService
from buffered_tus.logging_config import setup_loki_logging
from buffered_tus.monitoring import MetricsCollector
from buffered_tus.monitoring import set_metrics_collector
from buffered_tus.storage import S3ObjectStore
from buffered_tus.storage import create_s3_client
from buffered_tus.store import BufferedUploadStore
from buffered_tus.workers.sweeper import UploadSweeper


config = get_config()

setup_loki_logging(config, "sweeper")
logger = logging.getLogger(__name__)


async def run_sweeper_loop() -> None:
    """Main loop for the expired upload sweeper."""
    redis_client = async_redis.from_url(config.redis_url)
    set_metrics_collector(MetricsCollector())

    lock_service = RedisLockService(redis_client, retry_delay_ms=config.tus_lock_retry_delay_ms)
    store = BufferedUploadStore(
        redis_client=redis_client,
        lock_service=lock_service,
        object_store=S3ObjectStore(create_s3_client(config), config.s3_bucket_name),
        file_prefix=config.tus_file_prefix,
        metadata_prefix=config.tus_metadata_prefix,
        min_part_size_bytes=config.tus_min_part_size_bytes,
        expiration_minutes=config.tus_expiration_minutes,
        lock_timeout_seconds=config.tus_lock_timeout_seconds,
    )
    sweeper = UploadSweeper(
        store,
        lock_service,
        batch_size=config.sweeper_batch_size,
        max_interval_seconds=config.sweeper_max_interval_seconds,
    )

    logger.info("Starting upload sweeper service...")
    logger.info(f"Redis URL: {config.redis_url}")
    logger.info(f"Bucket: {config.s3_bucket_name}, metadata prefix: {config.tus_metadata_prefix}")
    logger.info(f"Sweep interval: {config.sweeper_loop_sleep_seconds} seconds")
    logger.info(f"Batch size: {config.sweeper_batch_size} uploads")

    try:
        while True:
            try:
                await sweeper.process_deletion()
                logger.info(f"Sleeping for {config.sweeper_loop_sleep_seconds} seconds...")
                await asyncio.sleep(config.sweeper_loop_sleep_seconds)
            except Exception as e:
                logger.error(f"Upload sweeper error: {e}", exc_info=True)
                await asyncio.sleep(60)
    finally:
        await redis_client.close()


if __name__ == "__main__":
    while True:
        try:
            asyncio.run(run_sweeper_loop())
        except KeyboardInterrupt:
            logger.info("Upload sweeper service stopped by user")
            break
        except Exception as e:
            logger.error(f"Upload sweeper crashed, restarting in 5 seconds: {e}", exc_info=True)
            time.sleep(5)

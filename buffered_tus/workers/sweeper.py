"""Scheduled removal of expired, incomplete uploads.

One sweeper runs at a time across all instances (global Redis lock, not waited on).
A run keeps pulling batches of expired ids until none are left or its time budget is
spent. Ids that fail, or that Redis shows are still live, are skipped for the rest of
the run. Failed ids stay eligible for the next one.
"""

import logging
import time

from buffered_tus.locks import RedisLockService
from buffered_tus.monitoring import get_metrics_collector
from buffered_tus.store import BufferedUploadStore


logger = logging.getLogger(__name__)

SWEEPER_LOCK_NAME = "resumable_upload_store_process_deletion"

# Extra lock hold time beyond the run budget
LOCK_DURATION_BUFFER_SECONDS = 60


class UploadSweeper:
    def __init__(
        self,
        store: BufferedUploadStore,
        lock_service: RedisLockService,
        *,
        batch_size: int = 100,
        max_interval_seconds: int = 3600,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")
        self.store = store
        self.lock_service = lock_service
        self.batch_size = batch_size
        self.max_interval_seconds = max_interval_seconds

    async def list_pending_deletion(self, ids_to_skip: set[str]) -> list[str]:
        expired = await self.store.list_expired()
        return [upload_id for upload_id in expired if upload_id not in ids_to_skip][: self.batch_size]

    async def process_deletion(self) -> int:
        """Run one sweep. Returns the number of uploads removed (0 if another sweeper holds the lock)."""
        lock_duration = self.max_interval_seconds + LOCK_DURATION_BUFFER_SECONDS
        token = await self.lock_service.try_acquire(SWEEPER_LOCK_NAME, lock_duration)
        if token is None:
            logger.info("Expiration sweep already running elsewhere, skipping")
            return 0

        execute_until = time.monotonic() + self.max_interval_seconds
        removed = 0
        failed = 0
        ids_to_skip: set[str] = set()

        try:
            logger.info("Processing resumable upload deletion")

            while time.monotonic() < execute_until:
                upload_ids = await self.list_pending_deletion(ids_to_skip)
                if not upload_ids:
                    break

                for upload_id in upload_ids:
                    try:
                        logger.info(f"Processing resumable upload deletion for upload_id={upload_id}")
                        if await self.store.expire_upload(upload_id):
                            removed += 1
                        else:
                            ids_to_skip.add(upload_id)
                    except Exception as e:
                        logger.error(
                            f"Failed to process resumable upload deletion for upload_id={upload_id}: {e}",
                            exc_info=True,
                        )
                        failed += 1
                        ids_to_skip.add(upload_id)

                    if time.monotonic() >= execute_until:
                        break

            logger.info(f"Processed resumable upload deletion: removed={removed}, failed={failed}")
            get_metrics_collector().record_sweeper_run(failed=failed)
            return removed
        except Exception:
            get_metrics_collector().record_sweeper_run(failed=failed, success=False)
            raise
        finally:
            await self.lock_service.release(SWEEPER_LOCK_NAME, token)

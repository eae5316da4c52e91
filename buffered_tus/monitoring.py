import logging

from opentelemetry import metrics


logger = logging.getLogger(__name__)


class MetricsCollector:
    def __init__(self) -> None:
        self.meter = metrics.get_meter(__name__)
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        self.uploads_created = self.meter.create_counter(
            name="tus_uploads_created_total", description="Total number of resumable uploads created", unit="1"
        )

        self.append_bytes = self.meter.create_counter(
            name="tus_append_bytes_total", description="Total bytes accepted by append calls", unit="bytes"
        )

        self.parts_flushed = self.meter.create_counter(
            name="tus_parts_flushed_total", description="Total parts flushed to the object store", unit="1"
        )

        self.part_bytes_flushed = self.meter.create_counter(
            name="tus_part_bytes_flushed_total", description="Total bytes flushed as parts", unit="bytes"
        )

        self.multipart_uploads_active = self.meter.create_up_down_counter(
            name="tus_multipart_uploads_active", description="Number of open multipart uploads", unit="1"
        )

        self.uploads_completed = self.meter.create_counter(
            name="tus_uploads_completed_total", description="Total completed uploads by finalization mode", unit="1"
        )

        self.upload_size_bytes = self.meter.create_histogram(
            name="tus_upload_size_bytes", description="Distribution of completed upload sizes", unit="bytes"
        )

        self.uploads_deleted = self.meter.create_counter(
            name="tus_uploads_deleted_total", description="Total uploads deleted", unit="1"
        )

        self.lock_timeouts = self.meter.create_counter(
            name="tus_lock_timeouts_total", description="Total lock acquisitions that timed out", unit="1"
        )

        self.sweeper_runs = self.meter.create_counter(
            name="tus_sweeper_runs_total", description="Total expiration sweeper runs", unit="1"
        )

        self.sweeper_failures = self.meter.create_counter(
            name="tus_sweeper_failures_total",
            description="Total expired uploads the sweeper failed to remove",
            unit="1",
        )

    def record_upload_created(self) -> None:
        self.uploads_created.add(1)

    def record_append(self, size_bytes: int) -> None:
        self.append_bytes.add(size_bytes)

    def record_multipart_operation(self, operation: str, size_bytes: int = 0) -> None:
        attributes = {"operation": operation}

        if operation == "upload_part":
            self.parts_flushed.add(1, attributes=attributes)
            self.part_bytes_flushed.add(size_bytes, attributes=attributes)
        elif operation == "initiate_upload":
            self.multipart_uploads_active.add(1, attributes=attributes)
        elif operation in ("complete_upload", "abort_upload"):
            self.multipart_uploads_active.add(-1, attributes=attributes)

    def record_upload_completed(self, mode: str, size_bytes: int) -> None:
        attributes = {"mode": mode}
        self.uploads_completed.add(1, attributes=attributes)
        self.upload_size_bytes.record(size_bytes, attributes=attributes)

    def record_upload_deleted(self, reason: str) -> None:
        self.uploads_deleted.add(1, attributes={"reason": reason})

    def record_lock_timeout(self, lock_name: str) -> None:
        self.lock_timeouts.add(1)

    def record_sweeper_run(self, failed: int, success: bool = True) -> None:
        self.sweeper_runs.add(1, attributes={"success": str(success).lower()})
        if failed:
            self.sweeper_failures.add(failed)


class NullMetricsCollector:
    def record_upload_created(self, *args: object, **kwargs: object) -> None:
        pass

    def record_append(self, *args: object, **kwargs: object) -> None:
        pass

    def record_multipart_operation(self, *args: object, **kwargs: object) -> None:
        pass

    def record_upload_completed(self, *args: object, **kwargs: object) -> None:
        pass

    def record_upload_deleted(self, *args: object, **kwargs: object) -> None:
        pass

    def record_lock_timeout(self, *args: object, **kwargs: object) -> None:
        pass

    def record_sweeper_run(self, *args: object, **kwargs: object) -> None:
        pass


_metrics_collector: MetricsCollector | NullMetricsCollector = NullMetricsCollector()


def get_metrics_collector() -> MetricsCollector | NullMetricsCollector:
    return _metrics_collector


def set_metrics_collector(collector: MetricsCollector | NullMetricsCollector) -> None:
    global _metrics_collector
    _metrics_collector = collector

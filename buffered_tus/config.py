import dataclasses

import dotenv

from buffered_tus.utils import as_bool
from buffered_tus.utils import env


dotenv.load_dotenv()

# Smallest non-final part size S3 accepts for a multipart upload
S3_MIN_PART_SIZE_BYTES = 5 * 1024 * 1024


@dataclasses.dataclass
class Config:
    """Application configuration settings."""

    # Logging
    log_level: str = env("LOG_LEVEL:INFO")
    loki_url: str = env("LOKI_URL:", convert=str)
    loki_enabled: bool = env("LOKI_ENABLED:false", convert=as_bool)

    # Server Configuration
    host: str = env("HOST:0.0.0.0")
    port: int = env("PORT:8000", convert=int)
    environment: str = env("ENVIRONMENT")
    debug: bool = env("DEBUG:false", convert=as_bool)

    # Redis for upload state and locks
    redis_url: str = env("REDIS_URL:redis://127.0.0.1:6379/0")

    # Object store
    s3_bucket_name: str = env("S3_BUCKET_NAME:uploads")
    s3_endpoint_url: str = env("S3_ENDPOINT_URL:", convert=str)
    s3_region: str = env("S3_REGION:us-east-1")
    s3_access_key_id: str = env("S3_ACCESS_KEY_ID:", convert=str)
    s3_secret_access_key: str = env("S3_SECRET_ACCESS_KEY:", convert=str)

    # Upload engine
    tus_file_prefix: str = env("TUS_FILE_PREFIX:files/")
    tus_metadata_prefix: str = env("TUS_METADATA_PREFIX:upload-info/")
    tus_min_part_size_bytes: int = env(f"TUS_MIN_PART_SIZE_BYTES:{S3_MIN_PART_SIZE_BYTES}", convert=int)
    tus_expiration_minutes: int = env("TUS_EXPIRATION_MINUTES:1440", convert=int)
    tus_lock_timeout_seconds: float = env("TUS_LOCK_TIMEOUT_SECONDS:30", convert=float)
    tus_lock_retry_delay_ms: int = env("TUS_LOCK_RETRY_DELAY_MS:100", convert=int)
    # 0 disables the Tus-Max-Size limit
    tus_max_size_bytes: int = env("TUS_MAX_SIZE_BYTES:0", convert=int)

    # Expiration sweeper
    sweeper_batch_size: int = env("SWEEPER_BATCH_SIZE:100", convert=int)
    sweeper_max_interval_seconds: int = env("SWEEPER_MAX_INTERVAL_SECONDS:3600", convert=int)
    sweeper_loop_sleep_seconds: int = env("SWEEPER_LOOP_SLEEP_SECONDS:300", convert=int)


def get_config() -> Config:
    """Get application configuration."""
    cfg = Config()

    env_value = getattr(cfg, "environment", None)
    if not env_value or not env_value.strip():
        raise ValueError("ENVIRONMENT variable is required but not set or empty")

    if cfg.tus_min_part_size_bytes < S3_MIN_PART_SIZE_BYTES:
        raise ValueError(
            f"TUS_MIN_PART_SIZE_BYTES must be at least {S3_MIN_PART_SIZE_BYTES} bytes, "
            f"got {cfg.tus_min_part_size_bytes}"
        )

    if cfg.tus_expiration_minutes <= 0:
        raise ValueError("TUS_EXPIRATION_MINUTES must be greater than zero")

    if cfg.tus_lock_retry_delay_ms <= 0:
        raise ValueError("TUS_LOCK_RETRY_DELAY_MS must be greater than zero")

    # Normalize prefixes so keys are always "<prefix><id>"
    for field_name in ("tus_file_prefix", "tus_metadata_prefix"):
        prefix = (getattr(cfg, field_name) or "").strip().lstrip("/")
        if prefix and not prefix.endswith("/"):
            prefix = prefix + "/"
        object.__setattr__(cfg, field_name, prefix)

    return cfg

import pytest

from buffered_tus.config import S3_MIN_PART_SIZE_BYTES
from buffered_tus.config import get_config


def test_defaults_from_test_env(monkeypatch):
    monkeypatch.delenv("TUS_FILE_PREFIX", raising=False)
    monkeypatch.delenv("TUS_EXPIRATION_MINUTES", raising=False)

    config = get_config()

    assert config.environment == "test"
    assert config.tus_file_prefix == "files/"
    assert config.tus_expiration_minutes == 1440
    assert config.tus_min_part_size_bytes >= S3_MIN_PART_SIZE_BYTES


def test_prefixes_are_normalized(monkeypatch):
    monkeypatch.setenv("TUS_FILE_PREFIX", "/uploads/files")
    monkeypatch.setenv("TUS_METADATA_PREFIX", "meta/")

    config = get_config()

    assert config.tus_file_prefix == "uploads/files/"
    assert config.tus_metadata_prefix == "meta/"


def test_boolean_and_numeric_conversion(monkeypatch):
    monkeypatch.setenv("LOKI_ENABLED", "True")
    monkeypatch.setenv("TUS_LOCK_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("TUS_MAX_SIZE_BYTES", "1048576")

    config = get_config()

    assert config.loki_enabled is True
    assert config.tus_lock_timeout_seconds == 2.5
    assert config.tus_max_size_bytes == 1048576


def test_blank_environment_is_rejected(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "  ")

    with pytest.raises(ValueError, match="ENVIRONMENT"):
        get_config()


def test_missing_environment_is_rejected(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    with pytest.raises(KeyError):
        get_config()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TUS_MIN_PART_SIZE_BYTES", str(S3_MIN_PART_SIZE_BYTES - 1)),
        ("TUS_EXPIRATION_MINUTES", "0"),
        ("TUS_LOCK_RETRY_DELAY_MS", "0"),
    ],
)
def test_invalid_upload_settings_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        get_config()

"""Tests for environment-driven gateway configuration."""

from pathlib import Path

from photocheck_gateway.config_loader import get_storage_info, load_config_from_env


def test_defaults(monkeypatch):
    for name in ("STORAGE_TYPE", "S3_BUCKET", "S3_REGION", "DATABASE_URL", "MAX_VERIFICATION_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)

    config = load_config_from_env()

    assert config.storage_type == "local"
    assert config.s3_bucket_name == "photocheck-uploads"
    assert config.s3_region == "auto"
    assert config.database_url is None
    assert config.max_verification_attempts == 3
    assert config.verification_retry_delay_ms == 5000
    assert config.presigned_url_expiry_seconds == 300
    assert (config.verify_concurrency, config.verify_attempts, config.verify_backoff_delay) == (20, 3, 2.0)
    assert (config.validate_concurrency, config.validate_attempts, config.validate_backoff_delay) == (5, 2, 5.0)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("STORAGE_TYPE", "S3")
    monkeypatch.setenv("S3_BUCKET", "selfies")
    monkeypatch.setenv("S3_ENDPOINT", "https://account.r2.cloudflarestorage.com")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///photos.db")
    monkeypatch.setenv("VERIFICATION_RETRY_DELAY_MS", "250")
    monkeypatch.setenv("VALIDATE_BACKOFF_MS", "1500")
    monkeypatch.setenv("PHOTOCHECK_RUNNER_CONFIG", "thresholds.toml")

    config = load_config_from_env()

    assert config.storage_type == "s3"
    assert config.s3_bucket_name == "selfies"
    assert config.s3_endpoint_url == "https://account.r2.cloudflarestorage.com"
    assert config.database_url == "sqlite:///photos.db"
    assert config.verification_retry_delay_ms == 250
    assert config.validate_backoff_delay == 1.5
    assert config.validation_config == Path("thresholds.toml")
    assert get_storage_info()["database"] == "sql"

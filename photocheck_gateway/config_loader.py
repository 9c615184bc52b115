"""Configuration loader for the upload gateway - loads from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .app import GatewayConfig


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value or None


def load_config_from_env() -> GatewayConfig:
    """
    Load GatewayConfig from environment variables.

    Loads .env file if present and reads configuration values.

    Environment Variables:
        STORAGE_TYPE: "local" or "s3" (default: local)
        S3_BUCKET: Bucket for uploads (default: photocheck-uploads)
        S3_REGION: Region, "auto" for R2 (default: auto)
        S3_ENDPOINT: Custom endpoint for S3-compatible storage
        S3_ACCESS_KEY_ID / S3_SECRET_ACCESS_KEY: Credentials
        LOCAL_STORAGE_DIR: Directory for local storage (default: uploads_store)
        LOCAL_STORAGE_BASE_URL: Public URL of the local PUT endpoint
        PRESIGNED_URL_EXPIRY_SECONDS: Upload URL lifetime (default: 300)
        DATABASE_URL: SQLAlchemy URL; unset keeps records in memory
        MAX_VERIFICATION_ATTEMPTS: HEAD lookups per verification (default: 3)
        VERIFICATION_RETRY_DELAY_MS: Pause between lookups in ms (default: 5000)
        VERIFY_CONCURRENCY / VALIDATE_CONCURRENCY: Worker counts (default: 20 / 5)
        VERIFY_ATTEMPTS / VALIDATE_ATTEMPTS: Job attempts (default: 3 / 2)
        VERIFY_BACKOFF_MS / VALIDATE_BACKOFF_MS: Base backoff in ms (default: 2000 / 5000)
        PHOTOCHECK_RUNNER_CONFIG: JSON/TOML file with validation thresholds

    Returns:
        GatewayConfig object with values from environment
    """
    # Load .env file if it exists
    load_dotenv()

    validation_config = _optional("PHOTOCHECK_RUNNER_CONFIG")

    return GatewayConfig(
        # Storage settings
        storage_type=os.getenv("STORAGE_TYPE", "local").lower(),
        s3_bucket_name=os.getenv("S3_BUCKET", "photocheck-uploads"),
        s3_region=os.getenv("S3_REGION", "auto"),
        s3_endpoint_url=_optional("S3_ENDPOINT"),
        s3_access_key_id=_optional("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_optional("S3_SECRET_ACCESS_KEY"),
        local_storage_dir=Path(os.getenv("LOCAL_STORAGE_DIR", "uploads_store")),
        local_storage_base_url=os.getenv("LOCAL_STORAGE_BASE_URL", "http://localhost:8000/v1/storage"),
        presigned_url_expiry_seconds=int(os.getenv("PRESIGNED_URL_EXPIRY_SECONDS", "300")),
        database_url=_optional("DATABASE_URL"),
        # Verification
        max_verification_attempts=int(os.getenv("MAX_VERIFICATION_ATTEMPTS", "3")),
        verification_retry_delay_ms=int(os.getenv("VERIFICATION_RETRY_DELAY_MS", "5000")),
        # Queues
        verify_concurrency=int(os.getenv("VERIFY_CONCURRENCY", "20")),
        verify_attempts=int(os.getenv("VERIFY_ATTEMPTS", "3")),
        verify_backoff_delay=float(os.getenv("VERIFY_BACKOFF_MS", "2000")) / 1000.0,
        validate_concurrency=int(os.getenv("VALIDATE_CONCURRENCY", "5")),
        validate_attempts=int(os.getenv("VALIDATE_ATTEMPTS", "2")),
        validate_backoff_delay=float(os.getenv("VALIDATE_BACKOFF_MS", "5000")) / 1000.0,
        validation_config=Path(validation_config) if validation_config else None,
    )


def get_storage_info() -> dict:
    """
    Get current storage configuration info for debugging.

    Returns:
        Dictionary with current storage settings
    """
    load_dotenv()

    return {
        "storage_type": os.getenv("STORAGE_TYPE", "local"),
        "s3_bucket": os.getenv("S3_BUCKET", "photocheck-uploads"),
        "s3_region": os.getenv("S3_REGION", "auto"),
        "s3_endpoint": os.getenv("S3_ENDPOINT", ""),
        "database": "sql" if os.getenv("DATABASE_URL") else "memory",
    }

"""Environment-driven configuration for the SnapList backend."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _read_int_env(name: str, default: int, min_value: int, max_value: int) -> int:
    """Return bounded integer env value with safe fallback."""
    raw = (os.getenv(name, str(default)) or "").strip()
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r. Using default=%s", name, raw, default)
        return default
    return max(min_value, min(max_value, value))


def _read_log_level_env(name: str, default: str) -> str:
    """Return a level name `logging` accepts, warning on unknown values."""
    raw = (os.getenv(name, default) or default).strip().upper()
    if not isinstance(logging.getLevelName(raw), int):
        logger.warning("Unknown log level for %s=%r. Using default=%s", name, raw, default)
        return default
    return raw


def _read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    api_prefix: str = "/api/v1"
    allowed_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = "item-images"
    media_store_backend: str = "supabase"

    aws_region: str = ""
    s3_images_bucket: str = ""
    s3_connect_timeout_seconds: int = 3
    s3_read_timeout_seconds: int = 12
    s3_max_attempts: int = 2

    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_timeout_seconds: int = 60
    openai_max_tokens: int = 2000

    ai_max_attempts: int = 3
    ai_retry_base_delay_seconds: int = 2
    signed_url_ttl_seconds: int = 3600

    max_file_size_mb: int = 10
    max_files_per_upload: int = 20
    process_uploads: bool = True
    max_image_dimension: int = 2048
    upload_job_workers: int = 2
    job_retention_minutes: int = 60

    strict_status_transitions: bool = True
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 30

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


def _split_origins(raw: str) -> List[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


def load_settings() -> Settings:
    """Build settings from the process environment (and `.env` if present)."""
    load_dotenv()

    api_prefix = (os.getenv("API_PREFIX", "/api/v1") or "").strip().rstrip("/")
    if api_prefix and not api_prefix.startswith("/"):
        api_prefix = f"/{api_prefix}"

    backend = (os.getenv("MEDIA_STORE_BACKEND", "supabase") or "").strip().lower()
    if backend not in {"supabase", "s3"}:
        logger.warning("Unknown MEDIA_STORE_BACKEND=%r. Using supabase.", backend)
        backend = "supabase"

    return Settings(
        api_prefix=api_prefix,
        allowed_origins=tuple(_split_origins(os.getenv("ALLOWED_ORIGINS", "*"))),
        log_level=_read_log_level_env("LOG_LEVEL", "INFO"),
        supabase_url=os.getenv("SUPABASE_URL", "").strip(),
        supabase_key=(
            os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
            or os.getenv("SUPABASE_KEY", "").strip()
        ),
        storage_bucket=os.getenv("SUPABASE_STORAGE_BUCKET", "item-images").strip() or "item-images",
        media_store_backend=backend,
        aws_region=os.getenv("AWS_REGION", "").strip(),
        s3_images_bucket=os.getenv("S3_IMAGES_BUCKET", "").strip(),
        s3_connect_timeout_seconds=_read_int_env(
            "S3_CONNECT_TIMEOUT_SECONDS", default=3, min_value=1, max_value=30
        ),
        s3_read_timeout_seconds=_read_int_env(
            "S3_READ_TIMEOUT_SECONDS", default=12, min_value=1, max_value=120
        ),
        s3_max_attempts=_read_int_env("S3_MAX_ATTEMPTS", default=2, min_value=1, max_value=5),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o").strip() or "gpt-4o",
        openai_timeout_seconds=_read_int_env(
            "OPENAI_TIMEOUT_SECONDS", default=60, min_value=5, max_value=600
        ),
        openai_max_tokens=_read_int_env(
            "OPENAI_MAX_TOKENS", default=2000, min_value=256, max_value=16000
        ),
        ai_max_attempts=_read_int_env("AI_MAX_ATTEMPTS", default=3, min_value=1, max_value=10),
        ai_retry_base_delay_seconds=_read_int_env(
            "AI_RETRY_BASE_DELAY_SECONDS", default=2, min_value=0, max_value=60
        ),
        signed_url_ttl_seconds=_read_int_env(
            "SIGNED_URL_TTL_SECONDS", default=3600, min_value=60, max_value=7 * 24 * 3600
        ),
        max_file_size_mb=_read_int_env("MAX_FILE_SIZE_MB", default=10, min_value=1, max_value=100),
        max_files_per_upload=_read_int_env(
            "MAX_FILES_PER_UPLOAD", default=20, min_value=1, max_value=100
        ),
        process_uploads=_read_bool_env("PROCESS_UPLOADS", True),
        max_image_dimension=_read_int_env(
            "MAX_IMAGE_DIMENSION", default=2048, min_value=256, max_value=8192
        ),
        upload_job_workers=_read_int_env("UPLOAD_JOB_WORKERS", default=2, min_value=1, max_value=16),
        job_retention_minutes=_read_int_env(
            "JOB_RETENTION_MINUTES", default=60, min_value=5, max_value=24 * 60
        ),
        strict_status_transitions=_read_bool_env("STRICT_STATUS_TRANSITIONS", True),
        rate_limit_window_seconds=_read_int_env(
            "RATE_LIMIT_WINDOW_SECONDS", default=60, min_value=1, max_value=3600
        ),
        rate_limit_max_requests=_read_int_env(
            "RATE_LIMIT_MAX_REQUESTS", default=30, min_value=1, max_value=10000
        ),
    )

"""Process-wide collaborators, built once at startup."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from analysis import AnalysisOrchestrator
from aws_client import AWSService
from ingestion import IngestionPipeline, UploadJobTracker
from listing_ai import ListingAIService
from settings import Settings
from supabase_client import SupabaseService
from utils.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    records: Any
    media: Any
    listing_ai: Any
    ingestion: IngestionPipeline
    analysis: AnalysisOrchestrator
    rate_limiter: SlidingWindowRateLimiter

    def health_snapshot(self) -> Dict[str, Any]:
        return {
            "records": self.records.health_snapshot(),
            "media": self.media.health_snapshot(),
            "media_backend": self.settings.media_store_backend,
            "ai": self.listing_ai.health_snapshot(),
        }

    def shutdown(self) -> None:
        self.ingestion.shutdown(wait=True)


def build_media_store(settings: Settings, records: SupabaseService) -> Any:
    if settings.media_store_backend == "s3":
        return AWSService(
            bucket=settings.s3_images_bucket,
            region=settings.aws_region,
            connect_timeout_seconds=settings.s3_connect_timeout_seconds,
            read_timeout_seconds=settings.s3_read_timeout_seconds,
            max_attempts=settings.s3_max_attempts,
        )
    return records


def build_services(
    settings: Settings,
    *,
    records: Optional[Any] = None,
    media: Optional[Any] = None,
    listing_ai: Optional[Any] = None,
    executor: Optional[Executor] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> AppServices:
    """Wire every collaborator; explicit arguments replace the configured ones."""
    if records is None:
        records = SupabaseService(
            url=settings.supabase_url,
            key=settings.supabase_key,
            bucket=settings.storage_bucket,
        )
        if not records.enabled:
            logger.warning("SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY not set. Item routes will fail.")

    if media is None:
        media = build_media_store(settings, records)

    if listing_ai is None:
        listing_ai = ListingAIService(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.openai_timeout_seconds,
            max_tokens=settings.openai_max_tokens,
        )
        if not listing_ai.enabled:
            logger.warning("OPENAI_API_KEY not set. Analysis requests will fail.")

    ingestion = IngestionPipeline(
        records,
        media,
        max_file_size_bytes=settings.max_file_size_bytes,
        process_uploads=settings.process_uploads,
        max_image_dimension=settings.max_image_dimension,
        workers=settings.upload_job_workers,
        executor=executor,
        tracker=UploadJobTracker(retention_minutes=settings.job_retention_minutes),
    )
    analysis = AnalysisOrchestrator(
        records,
        media,
        listing_ai,
        max_attempts=settings.ai_max_attempts,
        base_delay_seconds=settings.ai_retry_base_delay_seconds,
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        strict_transitions=settings.strict_status_transitions,
        sleep_fn=sleep_fn,
    )
    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    return AppServices(
        settings=settings,
        records=records,
        media=media,
        listing_ai=listing_ai,
        ingestion=ingestion,
        analysis=analysis,
        rate_limiter=rate_limiter,
    )

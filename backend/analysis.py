"""Analysis orchestration: status bookkeeping, retries and draft persistence."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from errors import AppError, BadRequestError, ConflictError, InternalError, NotFoundError
from item_status import transition_item_status
from listing_ai import is_retryable_ai_error
from schemas import ItemStatus, ListingDraft
from utils.keyed_lock import KeyedLock
from utils.retry import run_with_retry

logger = logging.getLogger(__name__)


def draft_columns(draft: ListingDraft) -> Dict[str, Any]:
    """Map a validated draft onto `listing_drafts` columns."""
    wire = draft.to_wire()
    return {
        "title": wire["title"],
        "description": wire["description"],
        "condition": wire["condition"],
        "item_specifics": wire["itemSpecifics"],
        "pricing": wire["pricing"],
        "category_id": wire["categoryId"],
        "keywords": wire["keywords"],
        "visible_flaws": wire["visibleFlaws"],
        "ai_confidence": wire["aiConfidence"],
    }


def analysis_payload(draft: ListingDraft) -> Dict[str, Any]:
    wire = draft.to_wire()
    return {
        "success": True,
        "message": "AI analysis completed successfully",
        "draft": {
            "title": wire["title"],
            "description": wire["description"],
            "condition": wire["condition"],
            "itemSpecifics": wire["itemSpecifics"],
            "pricing": wire["pricing"],
            "keywords": wire["keywords"],
            "aiConfidence": wire["aiConfidence"],
        },
    }


def stored_draft_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "itemId": row["item_id"],
        "title": row["title"],
        "description": row["description"],
        "condition": row["condition"],
        "itemSpecifics": row.get("item_specifics") or {},
        "pricing": row["pricing"],
        "categoryId": row.get("category_id"),
        "keywords": row.get("keywords") or [],
        "aiConfidence": row["ai_confidence"],
        "visibleFlaws": row.get("visible_flaws") or [],
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


class AnalysisOrchestrator:
    """Runs one analysis per call and keeps the item status consistent.

    `processing` is entered before any provider work. Success persists the
    draft and moves the item to `ready`; any failure after that point moves it
    back to `draft` and leaves the stored draft untouched.
    """

    def __init__(
        self,
        store: Any,
        media_store: Any,
        listing_ai: Any,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 2.0,
        signed_url_ttl_seconds: int = 3600,
        strict_transitions: bool = True,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.media_store = media_store
        self.listing_ai = listing_ai
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.strict_transitions = strict_transitions
        self.sleep_fn = sleep_fn
        self._in_flight = KeyedLock()

    def analyze(self, item_id: str, user_id: str) -> ListingDraft:
        item = self.store.get_item(item_id, user_id)
        if item is None:
            raise NotFoundError("Item not found.")

        images = self.store.list_item_images(item_id, user_id)
        if not images:
            raise BadRequestError("No images found for this item.")

        with self._in_flight.hold(item_id, blocking=False) as acquired:
            if not acquired:
                raise ConflictError("Analysis is already running for this item.")

            # Raises before any work when the current status cannot enter processing.
            processing_item = transition_item_status(
                self.store, item, ItemStatus.PROCESSING, strict=self.strict_transitions
            )
            started_at = time.perf_counter()
            try:
                draft = self._run(item_id, [image["storage_path"] for image in images])
                self.store.upsert_listing_draft(item_id, draft_columns(draft))
                transition_item_status(
                    self.store, processing_item, ItemStatus.READY, strict=self.strict_transitions
                )
            except Exception as exc:
                logger.error(
                    "AI analysis failed item_id=%s duration_ms=%.2f error=%s",
                    item_id,
                    (time.perf_counter() - started_at) * 1000,
                    exc,
                    exc_info=not isinstance(exc, AppError),
                )
                self._revert_to_draft(processing_item)
                raise InternalError("AI analysis failed.") from exc

        logger.info(
            "Item analyzed item_id=%s image_count=%s duration_ms=%.2f",
            item_id,
            len(images),
            (time.perf_counter() - started_at) * 1000,
        )
        return draft

    def _run(self, item_id: str, storage_paths: List[str]) -> ListingDraft:
        # URLs are resolved once and reused by every attempt.
        image_urls = [
            self.media_store.create_signed_url(path, self.signed_url_ttl_seconds) for path in storage_paths
        ]

        def on_retry(attempt: int, delay: float, exc: Exception) -> None:
            logger.warning(
                "AI analysis attempt failed item_id=%s attempt=%s/%s retry_in=%.1fs error=%s",
                item_id,
                attempt,
                self.max_attempts,
                delay,
                exc,
            )

        return run_with_retry(
            lambda: self.listing_ai.generate_listing_draft(image_urls, item_id=item_id),
            should_retry=is_retryable_ai_error,
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            sleep_fn=self.sleep_fn,
            on_retry=on_retry,
        )

    def _revert_to_draft(self, item: Dict[str, Any]) -> None:
        try:
            transition_item_status(self.store, item, ItemStatus.DRAFT, strict=False)
        except Exception:
            logger.exception("Failed to reset item status item_id=%s", item.get("id"))

    def get_draft(self, item_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_listing_draft(item_id, user_id)

"""OpenAI vision adapter that turns item photos into a validated listing draft."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI
from pydantic import ValidationError

from schemas import LISTING_CONDITIONS, ListingDraft
from utils.listing_prompts import SYSTEM_PROMPT, build_analysis_prompt

logger = logging.getLogger(__name__)

TEMPERATURE = 0.7
DEFAULT_CONDITION = "Used"
RETRYABLE_STATUS_CODES = {408, 409, 429}
_CONDITION_LOOKUP = {label.lower(): label for label in LISTING_CONDITIONS}


class AIResponseError(Exception):
    """The provider answered, but the answer is unusable."""

    def __init__(self, message: str, *, retryable: bool = False, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.details = details or {}


class AIProviderUnavailableError(Exception):
    """No provider client is configured."""


def is_retryable_ai_error(exc: BaseException) -> bool:
    """Transient transport and provider-side failures retry; bad output does not."""
    if isinstance(exc, AIResponseError):
        return exc.retryable
    # APITimeoutError is a subclass of APIConnectionError.
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in RETRYABLE_STATUS_CODES or exc.status_code >= 500
    return False


def _stringify_specific(value: Any) -> Any:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        parts = [str(part) for part in value if part is not None and not isinstance(part, (dict, list))]
        return ", ".join(parts) if parts else None
    return value


def clean_item_specifics(raw: Any) -> Dict[str, Any]:
    """Drop null entries and coerce scalar values to strings.

    The resulting key set is sparse and differs between calls.
    """
    if not isinstance(raw, dict):
        return {}

    cleaned: Dict[str, Any] = {}
    for key, value in raw.items():
        value = _stringify_specific(value)
        if value is None:
            continue
        cleaned[str(key)] = value
    return cleaned


def match_condition(value: Any) -> Any:
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_CONDITION
    return _CONDITION_LOOKUP.get(value.strip().lower(), value)


def normalize_listing_payload(parsed: Dict[str, Any]) -> Dict[str, Any]:
    """Fill defaults for missing optional fields before schema validation."""
    pricing = parsed.get("pricing") if isinstance(parsed.get("pricing"), dict) else {}

    currency = pricing.get("currency") or "USD"
    if isinstance(currency, str):
        currency = currency.strip().upper()

    category_id = parsed.get("categoryId")
    if isinstance(category_id, (int, float)) and not isinstance(category_id, bool):
        category_id = str(int(category_id))

    return {
        "title": parsed.get("title") or "",
        "description": parsed.get("description") or "",
        "condition": match_condition(parsed.get("condition")),
        "itemSpecifics": clean_item_specifics(parsed.get("itemSpecifics")),
        "pricing": {
            "min": pricing.get("min") or 0,
            "max": pricing.get("max") or 0,
            "suggested": pricing.get("suggested") or 0,
            "confidence": pricing.get("confidence") or 0.5,
            "currency": currency,
            "reasoning": pricing.get("reasoning"),
        },
        "categoryId": category_id or None,
        "keywords": parsed.get("keywords") or [],
        "visibleFlaws": parsed.get("visibleFlaws") or [],
        "aiConfidence": parsed.get("aiConfidence") or 0.5,
    }


def parse_model_content(content: Optional[str]) -> Dict[str, Any]:
    if not content or not content.strip():
        raise AIResponseError("No response content from AI provider.", retryable=True)

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse AI response content=%r", content[:2000])
        raise AIResponseError("Invalid JSON response from AI provider.") from exc

    if not isinstance(parsed, dict):
        raise AIResponseError("AI response JSON is not an object.")
    return parsed


def validate_listing_draft(payload: Dict[str, Any]) -> ListingDraft:
    try:
        return ListingDraft.model_validate(payload)
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
        logger.error("AI response failed schema validation errors=%s payload=%s", errors, payload)
        raise AIResponseError("AI response validation failed.", details={"errors": errors}) from exc


class ListingAIService:
    """Wraps one OpenAI client behind a fixed prompt and output contract."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o",
        timeout_seconds: float = 60,
        max_tokens: int = 2000,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.client = client
        if self.client is None and api_key:
            # Retries are owned by the analysis orchestrator.
            self.client = OpenAI(api_key=api_key, timeout=float(timeout_seconds), max_retries=0)
        self.enabled = self.client is not None

    def build_messages(self, image_urls: List[str]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": build_analysis_prompt(len(image_urls))}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    def generate_listing_draft(self, image_urls: List[str], item_id: str = "") -> ListingDraft:
        """Run one provider call and return a schema-valid draft or raise."""
        if not image_urls:
            raise ValueError("At least one image URL is required for analysis.")
        if not self.enabled:
            raise AIProviderUnavailableError("OPENAI_API_KEY is not configured.")

        logger.info(
            "Starting AI analysis item_id=%s image_count=%s model=%s",
            item_id,
            len(image_urls),
            self.model,
        )
        response = self.client.chat.completions.create(
            model=self.model,
            messages=self.build_messages(image_urls),
            response_format={"type": "json_object"},
            temperature=TEMPERATURE,
            max_tokens=self.max_tokens,
        )

        content = response.choices[0].message.content if response.choices else None
        draft = validate_listing_draft(normalize_listing_payload(parse_model_content(content)))

        logger.info(
            "AI analysis completed item_id=%s title=%r ai_confidence=%.2f",
            item_id,
            draft.title,
            draft.ai_confidence,
        )
        return draft

    def health_snapshot(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "model": self.model}

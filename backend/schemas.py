"""Pydantic models for items, listing drafts and request bodies."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field


class ItemStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    READY = "ready"
    PUBLISHED = "published"


ListingCondition = Literal[
    "New",
    "New (other)",
    "New with tags",
    "New without tags",
    "Pre-owned",
    "Used",
    "For parts or not working",
    "Seller refurbished",
    "Manufacturer refurbished",
]

LISTING_CONDITIONS: List[str] = list(get_args(ListingCondition))


class Pricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min: float = Field(ge=0)
    max: float = Field(ge=0)
    suggested: float = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    currency: str = Field(min_length=3, max_length=3)
    reasoning: Optional[str] = None


class ListingDraft(BaseModel):
    """Structured listing content produced by the AI provider."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str
    description: str
    condition: ListingCondition
    item_specifics: Dict[str, str] = Field(alias="itemSpecifics")
    pricing: Pricing
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    keywords: List[str]
    visible_flaws: List[str] = Field(alias="visibleFlaws")
    ai_confidence: float = Field(ge=0, le=1, alias="aiConfidence")

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase JSON shape stored and served verbatim."""
        payload = self.model_dump(mode="json", by_alias=True)
        if payload["pricing"].get("reasoning") is None:
            payload["pricing"].pop("reasoning", None)
        return payload


class UpdateItemStatusRequest(BaseModel):
    status: ItemStatus


class ReorderImagesRequest(BaseModel):
    image_ids: List[str] = Field(alias="imageIds")

    model_config = ConfigDict(populate_by_name=True)

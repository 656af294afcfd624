"""Item status transitions."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Mapping, Union

from errors import InvalidStatusTransitionError, NotFoundError
from schemas import ItemStatus

ALLOWED_TRANSITIONS: Mapping[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.DRAFT: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.READY, ItemStatus.DRAFT}),
    ItemStatus.READY: frozenset({ItemStatus.PROCESSING, ItemStatus.PUBLISHED, ItemStatus.DRAFT}),
    ItemStatus.PUBLISHED: frozenset({ItemStatus.READY, ItemStatus.DRAFT}),
}

StatusLike = Union[ItemStatus, str]


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    current, target = ItemStatus(current), ItemStatus(target)
    return current == target or target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: StatusLike, target: StatusLike) -> None:
    if not can_transition(current, target):
        current, target = ItemStatus(current), ItemStatus(target)
        raise InvalidStatusTransitionError(
            f"Cannot change item status from {current.value} to {target.value}.",
            details={"from": current.value, "to": target.value},
        )


def transition_item_status(
    store: Any,
    item: Dict[str, Any],
    target: StatusLike,
    *,
    strict: bool = True,
) -> Dict[str, Any]:
    """Validate (when strict) and persist a status change; returns the updated row."""
    target = ItemStatus(target)
    if strict:
        ensure_transition(item["status"], target)

    updated = store.update_item_status(item["id"], item["user_id"], target.value)
    if updated is None:
        raise NotFoundError("Item not found.")
    return updated

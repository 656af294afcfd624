import pytest

from errors import InvalidStatusTransitionError, NotFoundError
from item_status import can_transition, ensure_transition, transition_item_status
from schemas import ItemStatus


@pytest.mark.parametrize(
    "current,target",
    [
        ("draft", "processing"),
        ("processing", "ready"),
        ("processing", "draft"),
        ("ready", "published"),
        ("ready", "processing"),
        ("published", "ready"),
        ("published", "draft"),
        ("ready", "ready"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [("draft", "ready"), ("draft", "published"), ("published", "processing"), ("processing", "published")],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        ensure_transition(current, target)

    assert exc_info.value.details == {"from": current, "to": target}


def test_transition_persists_through_store(records):
    item = records.create_item("user-1")

    updated = transition_item_status(records, item, ItemStatus.PROCESSING)

    assert updated["status"] == "processing"
    assert records.get_item(item["id"], "user-1")["status"] == "processing"


def test_strict_transition_leaves_status_untouched_on_rejection(records):
    item = records.create_item("user-1")

    with pytest.raises(InvalidStatusTransitionError):
        transition_item_status(records, item, "published")

    assert records.get_item(item["id"], "user-1")["status"] == "draft"
    assert records.status_history == []


def test_lenient_mode_accepts_any_status(records):
    item = records.create_item("user-1")

    updated = transition_item_status(records, item, "published", strict=False)

    assert updated["status"] == "published"


def test_missing_row_raises_not_found(records):
    item = records.create_item("user-1")
    records.items.clear()

    with pytest.raises(NotFoundError):
        transition_item_status(records, item, "processing")

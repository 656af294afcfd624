import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from main import create_app
from schemas import ListingDraft
from services import build_services
from settings import Settings

USER_A = "11111111-1111-4111-8111-111111111111"
USER_B = "22222222-2222-4222-8222-222222222222"
TOKENS = {"token-a": USER_A, "token-b": USER_B}

SAMPLE_AI_PAYLOAD = {
    "title": "Nike Air Max 90 Running Shoes White Size 10",
    "description": "Classic Nike Air Max 90 in white with light creasing on the toe box.",
    "condition": "Pre-owned",
    "itemSpecifics": {"brand": "Nike", "model": "Air Max 90", "size": "10", "color": "White"},
    "pricing": {
        "min": 45,
        "max": 80,
        "suggested": 60,
        "confidence": 0.8,
        "currency": "USD",
        "reasoning": "Recent sales of similar pairs.",
    },
    "categoryId": "15709",
    "keywords": ["nike", "air max", "sneakers"],
    "visibleFlaws": ["light creasing on toe box"],
    "aiConfidence": 0.85,
}


def sample_draft(**overrides):
    payload = dict(SAMPLE_AI_PAYLOAD)
    payload.update(overrides)
    return ListingDraft.model_validate(payload)


def make_image_bytes(fmt="JPEG", size=(64, 48), color=(200, 30, 30)):
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def _now():
    return datetime.now(timezone.utc).isoformat()


class FakeRecordStore:
    """In-memory stand-in for SupabaseService's auth and table methods."""

    def __init__(self, tokens=None):
        self.tokens = dict(TOKENS if tokens is None else tokens)
        self.items = {}
        self.images = {}
        self.drafts = {}
        self.status_history = []
        self.fail_insert_calls = set()
        self._insert_calls = 0
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def get_user_id(self, token):
        return self.tokens.get(token)

    def create_item(self, user_id):
        now = _now()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "status": "draft",
            "created_at": now,
            "updated_at": now,
            "_seq": next(self._seq),
        }
        with self._lock:
            self.items[row["id"]] = row
        return self._public(row)

    def get_item(self, item_id, user_id):
        with self._lock:
            row = self.items.get(item_id)
            if row is None or row["user_id"] != user_id:
                return None
            return self._public(row)

    def list_items(self, user_id, status=None, limit=20, offset=0):
        with self._lock:
            rows = [
                row
                for row in self.items.values()
                if row["user_id"] == user_id and (status is None or row["status"] == status)
            ]
        rows.sort(key=lambda row: row["_seq"], reverse=True)
        return [self._public(row) for row in rows[offset:offset + limit]], len(rows)

    def update_item_status(self, item_id, user_id, status):
        with self._lock:
            row = self.items.get(item_id)
            if row is None or row["user_id"] != user_id:
                return None
            row["status"] = status
            row["updated_at"] = _now()
            self.status_history.append((item_id, status))
            return self._public(row)

    def delete_item(self, item_id, user_id):
        with self._lock:
            row = self.items.get(item_id)
            if row is None or row["user_id"] != user_id:
                return None
            paths = [image["storage_path"] for image in self.images.values() if image["item_id"] == item_id]
            self.drafts.pop(item_id, None)
            for image_id in [key for key, image in self.images.items() if image["item_id"] == item_id]:
                self.images.pop(image_id)
            self.items.pop(item_id)
            return paths

    def insert_image(self, image_id, item_id, storage_path, order_index):
        with self._lock:
            self._insert_calls += 1
            if self._insert_calls in self.fail_insert_calls:
                raise RuntimeError("insert failed")
            row = {
                "id": image_id,
                "item_id": item_id,
                "storage_path": storage_path,
                "order_index": order_index,
                "created_at": _now(),
                "_seq": next(self._seq),
            }
            self.images[image_id] = row
            return self._public(row)

    def list_item_images(self, item_id, user_id):
        with self._lock:
            item = self.items.get(item_id)
            if item is None or item["user_id"] != user_id:
                return []
            rows = [image for image in self.images.values() if image["item_id"] == item_id]
        rows.sort(key=lambda row: (row["order_index"], row["_seq"]))
        return [self._public(row) for row in rows]

    def get_max_order_index(self, item_id):
        with self._lock:
            indices = [image["order_index"] for image in self.images.values() if image["item_id"] == item_id]
        return max(indices) if indices else -1

    def delete_image_record(self, image_id, user_id):
        with self._lock:
            image = self.images.get(image_id)
            if image is None:
                return None
            item = self.items.get(image["item_id"])
            if item is None or item["user_id"] != user_id:
                return None
            return self._public(self.images.pop(image_id))

    def reorder_images(self, item_id, image_ids):
        with self._lock:
            for index, image_id in enumerate(image_ids):
                image = self.images.get(image_id)
                if image is not None and image["item_id"] == item_id:
                    image["order_index"] = index

    def upsert_listing_draft(self, item_id, columns):
        with self._lock:
            existing = self.drafts.get(item_id)
            now = _now()
            row = {
                "id": existing["id"] if existing else str(uuid.uuid4()),
                "item_id": item_id,
                **columns,
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            self.drafts[item_id] = row
            return dict(row)

    def get_listing_draft(self, item_id, user_id):
        with self._lock:
            item = self.items.get(item_id)
            if item is None or item["user_id"] != user_id:
                return None
            row = self.drafts.get(item_id)
            return dict(row) if row else None

    def health_snapshot(self):
        return {"supabase_enabled": True, "storage_bucket": "fake"}

    @staticmethod
    def _public(row):
        return {key: value for key, value in row.items() if not key.startswith("_")}


class FakeMediaStore:
    """In-memory media store; an existing key is an error, like the real ones."""

    def __init__(self):
        self.objects = {}
        self.content_types = {}
        self.deleted = []
        self.signed = []
        self.fail_upload_calls = set()
        self.fail_delete = False
        self._upload_calls = 0
        self._lock = threading.Lock()

    def upload_image(self, path, data, content_type):
        with self._lock:
            self._upload_calls += 1
            if self._upload_calls in self.fail_upload_calls:
                raise RuntimeError("storage unavailable")
            if path in self.objects:
                raise RuntimeError(f"object already exists: {path}")
            self.objects[path] = data
            self.content_types[path] = content_type
        return path

    def create_signed_url(self, path, expires_in):
        self.signed.append((path, expires_in))
        return f"https://media.test/{path}?expires_in={expires_in}"

    def delete_image(self, path):
        self.delete_images([path])

    def delete_images(self, paths):
        if self.fail_delete:
            raise RuntimeError("delete failed")
        with self._lock:
            for path in paths:
                self.deleted.append(path)
                self.objects.pop(path, None)

    def health_snapshot(self):
        return {"fake_media": True}


class FakeListingAI:
    """Returns queued outcomes in order; exceptions in the queue are raised."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.enabled = True

    def generate_listing_draft(self, image_urls, item_id=""):
        self.calls.append(list(image_urls))
        outcome = self.outcomes.pop(0) if self.outcomes else sample_draft()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def health_snapshot(self):
        return {"enabled": True, "model": "fake"}


@pytest.fixture
def records():
    return FakeRecordStore()


@pytest.fixture
def media():
    return FakeMediaStore()


@pytest.fixture
def listing_ai():
    return FakeListingAI()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def settings():
    return Settings(
        max_file_size_mb=1,
        max_files_per_upload=5,
        rate_limit_max_requests=1000,
        upload_job_workers=2,
    )


@pytest.fixture
def services(settings, records, media, listing_ai, sleeps):
    built = build_services(
        settings,
        records=records,
        media=media,
        listing_ai=listing_ai,
        sleep_fn=sleeps.append,
    )
    yield built
    built.shutdown()


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def make_client(settings, records, media, listing_ai, sleeps):
    """Build a client over the shared fakes with some settings overridden."""
    built = []

    def factory(**overrides):
        services = build_services(
            replace(settings, **overrides),
            records=records,
            media=media,
            listing_ai=listing_ai,
            sleep_fn=sleeps.append,
        )
        built.append(services)
        return TestClient(create_app(services=services))

    yield factory
    for services in built:
        services.shutdown()


@pytest.fixture
def headers_a():
    return {"Authorization": "Bearer token-a"}


@pytest.fixture
def headers_b():
    return {"Authorization": "Bearer token-b"}

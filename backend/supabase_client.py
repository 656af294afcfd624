"""Supabase client helpers for auth, storage and table persistence."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from supabase import Client, create_client

from schemas import ItemStatus

logger = logging.getLogger(__name__)

ITEMS_TABLE = "items"
IMAGES_TABLE = "item_images"
DRAFTS_TABLE = "listing_drafts"
OWNER_JOIN = "*, items!inner(user_id)"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _first(rows: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


def _strip_owner_join(row: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = dict(row)
    cleaned.pop("items", None)
    return cleaned


class SupabaseService:
    """Thin wrapper around Supabase auth, storage and table operations.

    Every image and draft query is joined through `items` and filtered by the
    owning user id; there is no unscoped read path.
    """

    def __init__(
        self,
        url: str = "",
        key: str = "",
        bucket: str = "item-images",
        client: Optional[Client] = None,
    ) -> None:
        self.bucket = bucket
        self.client: Optional[Client] = client
        if self.client is None and url and key:
            self.client = create_client(url, key)
        self.enabled = self.client is not None

    def _require_client(self) -> Client:
        if not self.enabled or not self.client:
            raise RuntimeError("Supabase is not configured.")
        return self.client

    def get_user_id(self, token: str) -> Optional[str]:
        """Resolve a bearer token to a user id, or None when it is not valid."""
        client = self._require_client()
        try:
            response = client.auth.get_user(token)
        except Exception as exc:
            logger.warning("Token verification failed: %s", exc)
            return None

        user = getattr(response, "user", None) if response else None
        return str(user.id) if user else None

    def upload_image(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes under `path`; fails if the key already exists."""
        client = self._require_client()
        client.storage.from_(self.bucket).upload(
            path=path,
            file=data,
            file_options={"content-type": content_type, "upsert": "false"},
        )
        return path

    def create_signed_url(self, path: str, expires_in: int) -> str:
        """Return a time-limited download URL for a stored object."""
        client = self._require_client()
        result = client.storage.from_(self.bucket).create_signed_url(path, expires_in)
        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            raise RuntimeError(f"Failed to create signed URL for key={path}")
        return url

    def delete_image(self, path: str) -> None:
        """Remove one stored object."""
        self.delete_images([path])

    def delete_images(self, paths: Sequence[str]) -> None:
        """Remove stored objects in one storage call."""
        if not paths:
            return
        client = self._require_client()
        client.storage.from_(self.bucket).remove(list(paths))

    def create_item(self, user_id: str) -> Dict[str, Any]:
        """Insert a new draft item owned by `user_id`."""
        client = self._require_client()
        now = utc_now_iso()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "status": ItemStatus.DRAFT.value,
            "created_at": now,
            "updated_at": now,
        }
        response = client.table(ITEMS_TABLE).insert(row).execute()
        return _first(response.data) or row

    def get_item(self, item_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one item scoped to its owner."""
        if not is_uuid(item_id):
            return None
        client = self._require_client()
        response = (
            client.table(ITEMS_TABLE)
            .select("*")
            .eq("id", item_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return _first(response.data)

    def list_items(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return a page of the owner's items, newest first, with the total count."""
        client = self._require_client()
        query = client.table(ITEMS_TABLE).select("*", count="exact").eq("user_id", user_id)
        if status:
            query = query.eq("status", status)
        response = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        return list(response.data or []), int(response.count or 0)

    def update_item_status(self, item_id: str, user_id: str, status: str) -> Optional[Dict[str, Any]]:
        """Persist a new status and bump `updated_at`."""
        client = self._require_client()
        response = (
            client.table(ITEMS_TABLE)
            .update({"status": status, "updated_at": utc_now_iso()})
            .eq("id", item_id)
            .eq("user_id", user_id)
            .execute()
        )
        return _first(response.data)

    def delete_item(self, item_id: str, user_id: str) -> Optional[List[str]]:
        """Delete the item, its draft and image rows.

        Returns the storage keys of the removed images, or None when the item
        does not exist for this user. Storage objects are left to the caller.
        """
        if self.get_item(item_id, user_id) is None:
            return None

        storage_paths = [image["storage_path"] for image in self.list_item_images(item_id, user_id)]
        client = self._require_client()
        client.table(DRAFTS_TABLE).delete().eq("item_id", item_id).execute()
        client.table(IMAGES_TABLE).delete().eq("item_id", item_id).execute()
        client.table(ITEMS_TABLE).delete().eq("id", item_id).eq("user_id", user_id).execute()
        return storage_paths

    def insert_image(self, image_id: str, item_id: str, storage_path: str, order_index: int) -> Dict[str, Any]:
        """Insert one image record at `order_index`."""
        client = self._require_client()
        row = {
            "id": image_id,
            "item_id": item_id,
            "storage_path": storage_path,
            "order_index": order_index,
            "created_at": utc_now_iso(),
        }
        response = client.table(IMAGES_TABLE).insert(row).execute()
        return _first(response.data) or row

    def list_item_images(self, item_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Return the item's images ordered by position, scoped to the owner."""
        if not is_uuid(item_id):
            return []
        client = self._require_client()
        response = (
            client.table(IMAGES_TABLE)
            .select(OWNER_JOIN)
            .eq("item_id", item_id)
            .eq("items.user_id", user_id)
            .order("order_index")
            .order("created_at")
            .execute()
        )
        return [_strip_owner_join(row) for row in response.data or []]

    def get_max_order_index(self, item_id: str) -> int:
        """Highest order index among the item's images, -1 when it has none."""
        client = self._require_client()
        response = (
            client.table(IMAGES_TABLE)
            .select("order_index")
            .eq("item_id", item_id)
            .order("order_index", desc=True)
            .limit(1)
            .execute()
        )
        row = _first(response.data)
        return int(row["order_index"]) if row else -1

    def delete_image_record(self, image_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Delete one image row owned through its item; returns the removed row."""
        if not is_uuid(image_id):
            return None
        client = self._require_client()
        response = (
            client.table(IMAGES_TABLE)
            .select(OWNER_JOIN)
            .eq("id", image_id)
            .eq("items.user_id", user_id)
            .limit(1)
            .execute()
        )
        row = _first(response.data)
        if row is None:
            return None

        client.table(IMAGES_TABLE).delete().eq("id", image_id).execute()
        return _strip_owner_join(row)

    def reorder_images(self, item_id: str, image_ids: Sequence[str]) -> None:
        """Overwrite order indices with each id's position in `image_ids`."""
        client = self._require_client()
        for index, image_id in enumerate(image_ids):
            if not is_uuid(image_id):
                logger.warning("Skipping invalid image id in reorder item_id=%s image_id=%r", item_id, image_id)
                continue
            (
                client.table(IMAGES_TABLE)
                .update({"order_index": index})
                .eq("id", image_id)
                .eq("item_id", item_id)
                .execute()
            )

    def upsert_listing_draft(self, item_id: str, columns: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or overwrite the single draft row of an item."""
        client = self._require_client()
        row = {"item_id": item_id, **columns, "updated_at": utc_now_iso()}
        response = client.table(DRAFTS_TABLE).upsert(row, on_conflict="item_id").execute()
        return _first(response.data) or row

    def get_listing_draft(self, item_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the stored draft of an item scoped to its owner."""
        if not is_uuid(item_id):
            return None
        client = self._require_client()
        response = (
            client.table(DRAFTS_TABLE)
            .select(OWNER_JOIN)
            .eq("item_id", item_id)
            .eq("items.user_id", user_id)
            .limit(1)
            .execute()
        )
        row = _first(response.data)
        return _strip_owner_join(row) if row else None

    def health_snapshot(self) -> Dict[str, Any]:
        """Return non-sensitive service readiness flags."""
        return {"supabase_enabled": self.enabled, "storage_bucket": self.bucket}

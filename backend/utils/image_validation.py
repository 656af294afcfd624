"""Upload validation gate for declared media type and size."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from errors import PayloadTooLargeError, UnsupportedMediaTypeError

DEFAULT_MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

ALLOWED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
}
EXTENSION_TO_CONTENT_TYPE = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".jfif": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
CONTENT_TYPE_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def validate_image_file(
    content_type: str,
    size: int,
    max_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
) -> None:
    """Reject unsupported media types and oversized payloads.

    Pure check, runs before any storage call.
    """
    normalized = (content_type or "").strip().lower()
    if normalized not in ALLOWED_IMAGE_TYPES:
        raise UnsupportedMediaTypeError(
            f"Invalid image type: {content_type or 'missing'}. "
            f"Allowed types: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}",
            details={"content_type": content_type},
        )

    if size > max_size_bytes:
        raise PayloadTooLargeError(
            f"Image too large: {size / 1024 / 1024:.2f}MB. "
            f"Maximum size: {max_size_bytes / 1024 / 1024:.2f}MB",
            details={"size": size, "max_size": max_size_bytes},
        )


def resolve_content_type(declared: Optional[str], filename: str) -> str:
    """Prefer the declared type; infer from the extension only when none is declared."""
    content_type = (declared or "").split(";")[0].strip().lower()
    if content_type:
        return content_type

    inferred = EXTENSION_TO_CONTENT_TYPE.get(Path(filename).suffix.lower())
    return inferred or "application/octet-stream"

"""Image normalization before storage."""

from __future__ import annotations

from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

PIL_FORMAT_BY_CONTENT_TYPE = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


def normalize_image(raw_bytes: bytes, content_type: str, max_dimension: int = 2048, quality: int = 85) -> bytes:
    """Apply EXIF orientation, bound the longest edge and strip metadata.

    The output keeps the input format so the storage key extension stays valid.
    """
    image_format = PIL_FORMAT_BY_CONTENT_TYPE.get(content_type.lower())
    if image_format is None:
        raise ValueError(f"Cannot normalize content type {content_type!r}.")

    try:
        with Image.open(BytesIO(raw_bytes)) as source:
            source.load()
            image = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Failed to decode image bytes.") from exc

    # Some encoders fall back to image.info when no exif kwarg is given.
    for key in ("exif", "xmp", "XML:com.adobe.xmp"):
        image.info.pop(key, None)

    if max_dimension > 0:
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    save_kwargs = {}
    if image_format == "JPEG":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        save_kwargs = {"quality": quality, "optimize": True}
    elif image_format == "WEBP":
        save_kwargs = {"quality": quality}
    else:
        save_kwargs = {"optimize": True}

    output = BytesIO()
    image.save(output, format=image_format, **save_kwargs)
    return output.getvalue()

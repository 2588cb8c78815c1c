from __future__ import annotations

import re
from typing import Any

DEFAULT_MEDIA_TYPE = "image/jpeg"

_DATA_URL_PATTERN = re.compile(
    r"^\s*data:(?P<media_type>image/[a-zA-Z0-9.+-]+);base64,(?P<data>.+?)\s*$",
    flags=re.IGNORECASE | re.DOTALL,
)


class ImagePayloadError(ValueError):
    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def validate_image_payload(image: Any, *, max_bytes: int) -> str:
    """Check presence and size of a client image and return it unchanged."""
    if not isinstance(image, str) or not image.strip():
        raise ImagePayloadError("No image provided")

    _, encoded = split_data_url(image)
    # base64 carries 3 bytes per 4 characters, minus padding
    estimated_bytes = (len(encoded) * 3) // 4 - encoded.count("=")
    if estimated_bytes <= 0:
        raise ImagePayloadError("Image payload was empty.")
    if estimated_bytes > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise ImagePayloadError(
            f"Image is too large ({estimated_bytes} bytes). The limit is {limit_mb:g}MB.",
            status_code=413,
        )
    return image


def split_data_url(image: str) -> tuple[str, str]:
    match = _DATA_URL_PATTERN.match(image)
    if match:
        media_type = match.group("media_type").lower()
        encoded = match.group("data")
    else:
        media_type = DEFAULT_MEDIA_TYPE
        encoded = image
    return media_type, re.sub(r"\s+", "", encoded)


def ensure_data_url(image: str) -> str:
    if _DATA_URL_PATTERN.match(image):
        return image.strip()
    media_type, encoded = split_data_url(image)
    return f"data:{media_type};base64,{encoded}"

from __future__ import annotations

import base64
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from plant_doctor.image_payload import (  # noqa: E402
    ImagePayloadError,
    ensure_data_url,
    split_data_url,
    validate_image_payload,
)


def _data_url(size: int, media_type: str = "image/jpeg") -> str:
    encoded = base64.b64encode(b"\xff" * size).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


@pytest.mark.parametrize("image", [None, "", "   ", 123])
def test_missing_image_is_rejected(image):
    with pytest.raises(ImagePayloadError, match="No image provided") as exc_info:
        validate_image_payload(image, max_bytes=1024)

    assert exc_info.value.status_code == 400


def test_data_url_without_bytes_is_rejected():
    with pytest.raises(ImagePayloadError, match="empty"):
        validate_image_payload("data:image/png;base64,==", max_bytes=1024)


def test_oversized_image_is_rejected_with_413():
    with pytest.raises(ImagePayloadError, match="too large") as exc_info:
        validate_image_payload(_data_url(2048), max_bytes=1024)

    assert exc_info.value.status_code == 413


def test_image_within_limit_is_returned_unchanged():
    image = _data_url(1000)

    assert validate_image_payload(image, max_bytes=1024) is image


def test_split_data_url_reads_media_type_and_strips_whitespace():
    assert split_data_url("data:image/PNG;base64,AAAA\nBBBB ") == ("image/png", "AAAABBBB")
    assert split_data_url("AAAABBBB") == ("image/jpeg", "AAAABBBB")


def test_ensure_data_url_wraps_bare_base64():
    assert ensure_data_url("AAAA") == "data:image/jpeg;base64,AAAA"
    assert ensure_data_url("data:image/webp;base64,AAAA") == "data:image/webp;base64,AAAA"

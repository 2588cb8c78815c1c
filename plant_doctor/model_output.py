from __future__ import annotations

import json
from typing import Any


class ModelOutputError(ValueError):
    pass


def find_balanced_object_spans(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` slices of every top-level ``{...}`` span in ``text``.

    Braces inside JSON string literals are ignored. Quotes are only tracked once
    an object is open, so apostrophes and quotes in surrounding prose do not
    confuse the scan. An object left open at the end of the text is dropped.
    """
    spans: list[tuple[int, int]] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if depth == 0:
            if char == "{":
                depth = 1
                start = index
            continue

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
                start = -1
    return spans


def extract_json_object(text: Any) -> dict[str, Any]:
    """Parse the intended JSON object out of free-form model text.

    Markdown fences and prose around the object are tolerated. The largest
    balanced span wins; the earliest one breaks ties. Smaller spans are only
    tried when the larger ones are not valid JSON objects.
    """
    if not isinstance(text, str) or not text.strip():
        raise ModelOutputError("Model returned no text content.")

    spans = find_balanced_object_spans(text)
    if not spans:
        raise ModelOutputError("No JSON object found in model output.")

    spans.sort(key=lambda span: (-(span[1] - span[0]), span[0]))
    last_error: Exception | None = None
    for start, end in spans:
        try:
            payload = json.loads(text[start:end])
        except (json.JSONDecodeError, RecursionError) as exc:
            last_error = exc
            continue
        if isinstance(payload, dict):
            return payload

    if last_error is not None:
        raise ModelOutputError(f"Model output JSON could not be parsed: {last_error}") from last_error
    raise ModelOutputError("No JSON object found in model output.")


def clip_for_log(text: Any, *, limit: int = 1000) -> str:
    clipped = str(text or "").strip()
    if len(clipped) > limit:
        return f"{clipped[:limit]}..."
    return clipped

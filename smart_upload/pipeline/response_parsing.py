from __future__ import annotations

import json
import math
import re
from typing import Any

from jsonschema import Draft202012Validator

from smart_upload.utils.error_taxonomy import MalformedModelResponseError

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block of ``text``, fences removed."""
    if not text:
        return None

    candidate = text.strip()
    fence_match = _FENCE_RE.match(candidate)
    if fence_match is not None:
        candidate = fence_match.group(1).strip()

    start = candidate.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(candidate)):
        char = candidate[index]
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
                return candidate[start : index + 1]

    return None


def parse_model_response(raw_text: str, *, schema: dict[str, Any]) -> dict[str, Any]:
    json_text = extract_json_object(raw_text)
    if json_text is None:
        raise MalformedModelResponseError(
            "Model response does not contain a JSON object", raw_text=raw_text
        )

    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as error:
        raise MalformedModelResponseError(
            f"Model response is not valid JSON: {error.msg}",
            raw_text=raw_text,
        ) from error

    if not isinstance(parsed, dict):
        raise MalformedModelResponseError(
            "Model response JSON root must be an object", raw_text=raw_text
        )

    errors = schema_errors(parsed, schema)
    if errors:
        raise MalformedModelResponseError(
            "Model response failed schema validation: " + "; ".join(errors[:5]),
            raw_text=raw_text,
            errors=errors,
            schema_invalid=True,
        )

    return parsed


def schema_errors(payload: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(payload),
        key=lambda item: [str(part) for part in item.path],
    )

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.path)
        if path:
            messages.append(f"{path}: {error.message}")
        else:
            messages.append(error.message)

    return messages


def normalize_confidence(value: Any) -> int:
    """Map a self-reported confidence onto 0..100.

    Values strictly between 0 and 1 are read as fractions.
    """
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0

    if 0 < number < 1:
        number *= 100

    return int(round(min(100.0, max(0.0, number))))

from __future__ import annotations

import pytest

from smart_upload.pipeline.response_parsing import (
    extract_json_object,
    normalize_confidence,
    parse_model_response,
)
from smart_upload.utils.error_taxonomy import MalformedModelResponseError

SCHEMA = {
    "type": "object",
    "required": ["title", "confidenceScore"],
    "properties": {
        "title": {"type": "string"},
        "confidenceScore": {"type": "number"},
    },
}


def test_extract_json_object_strips_fences_and_prose() -> None:
    fenced = '```json\n{"title": "March"}\n```'
    chatty = 'Here you go: {"title": "A {nested} brace", "x": {"y": 1}} thanks!'

    assert extract_json_object(fenced) == '{"title": "March"}'
    assert extract_json_object(chatty) == '{"title": "A {nested} brace", "x": {"y": 1}}'
    assert extract_json_object("no json here") is None
    assert extract_json_object("") is None


def test_parse_model_response_returns_payload() -> None:
    parsed = parse_model_response('{"title": "March", "confidenceScore": 80}', schema=SCHEMA)

    assert parsed == {"title": "March", "confidenceScore": 80}


def test_parse_model_response_rejects_non_json() -> None:
    with pytest.raises(MalformedModelResponseError) as exc_info:
        parse_model_response("I could not read the score.", schema=SCHEMA)

    assert exc_info.value.code == "LLM_INVALID_JSON"
    assert exc_info.value.raw_text == "I could not read the score."


def test_parse_model_response_rejects_broken_json() -> None:
    with pytest.raises(MalformedModelResponseError) as exc_info:
        parse_model_response('{"title": "March", }', schema=SCHEMA)

    assert exc_info.value.code == "LLM_INVALID_JSON"


def test_parse_model_response_rejects_schema_violations() -> None:
    with pytest.raises(MalformedModelResponseError) as exc_info:
        parse_model_response('{"title": 7}', schema=SCHEMA)

    error = exc_info.value
    assert error.code == "LLM_SCHEMA_INVALID"
    assert any("confidenceScore" in message for message in error.errors)
    assert any(message.startswith("title:") for message in error.errors)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (92, 92),
        ("75", 75),
        (0.85, 85),
        (150, 100),
        (-3, 0),
        (None, 0),
        ("high", 0),
        (True, 0),
        (float("nan"), 0),
    ],
)
def test_normalize_confidence(raw: object, expected: int) -> None:
    assert normalize_confidence(raw) == expected

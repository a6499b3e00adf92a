from __future__ import annotations

from typing import Any

import pytest

from smart_upload.llm_client.base import Attachment
from smart_upload.llm_client.openai_client import OpenAIVisionClient

PRICING = {
    "currency": "USD",
    "updated_at": "2026-09-01",
    "llm": {"openai": {"models": {"gpt-4o": {"input": 2.5, "output": 10.0}}}},
}


class FakeResponsesService:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        return {
            "output": [
                {
                    "content": [
                        {"type": "output_text", "text": '{"title": "March"}'},
                    ]
                }
            ],
            "usage": {
                "input_tokens": 1200,
                "output_tokens": 300,
                "total_tokens": 1500,
            },
        }


def test_openai_payload_attaches_images_and_pdfs() -> None:
    payload = OpenAIVisionClient.build_request_payload(
        system_prompt="sys",
        user_content="user",
        attachments=[
            Attachment(mime_type="image/png", data_base64="aW1n", filename="Original Page 1"),
            Attachment(mime_type="application/pdf", data_base64="cGRm", filename="source.pdf"),
        ],
        json_schema={"$schema": "https://json-schema.org/draft/2020-12/schema", "type": "object"},
        model="gpt-4o",
        params={},
        run_meta={"schema_name": "smart_upload_vision"},
    )

    system_message, user_message = payload["input"]
    assert system_message["content"] == [{"type": "input_text", "text": "sys"}]
    assert user_message["content"][0] == {"type": "input_text", "text": "user"}
    assert user_message["content"][1] == {
        "type": "input_image",
        "image_url": "data:image/png;base64,aW1n",
        "detail": "high",
    }
    assert user_message["content"][2]["type"] == "input_file"
    assert user_message["content"][2]["filename"] == "source.pdf"

    text_format = payload["text"]["format"]
    assert text_format["name"] == "smart_upload_vision"
    assert "$schema" not in text_format["schema"]
    assert text_format["strict"] is False
    assert "temperature" not in payload


def test_openai_payload_passes_sampling_params() -> None:
    payload = OpenAIVisionClient.build_request_payload(
        system_prompt="sys",
        user_content="user",
        attachments=[],
        json_schema={"type": "object"},
        model="gpt-4o",
        params={"temperature": 0.1, "max_output_tokens": "4096"},
        run_meta={},
    )

    assert payload["temperature"] == 0.1
    assert payload["max_output_tokens"] == 4096
    assert payload["text"]["format"]["name"] == "smart_upload_metadata"


def test_openai_generate_json_normalizes_usage_and_cost() -> None:
    fake_service = FakeResponsesService()
    client = OpenAIVisionClient(responses_service=fake_service, pricing_config=PRICING)

    result = client.generate_json(
        system_prompt="sys",
        user_content="user",
        attachments=[],
        json_schema={"type": "object"},
        model="gpt-4o",
        params={},
        run_meta={"schema_name": "smart_upload_vision"},
    )

    assert result.raw_text == '{"title": "March"}'
    assert result.prompt_tokens == 1200
    assert result.usage_normalized["completion_tokens"] == 300
    assert result.cost["llm_cost_usd"] == pytest.approx(0.006)
    assert result.cost["priced"] is True
    assert len(fake_service.calls) == 1


def test_openai_client_requires_key_without_injected_service() -> None:
    client = OpenAIVisionClient()

    with pytest.raises(ValueError, match="OpenAI API key is required"):
        client.generate_json(
            system_prompt="sys",
            user_content="user",
            attachments=[],
            json_schema={"type": "object"},
            model="gpt-4o",
            params={},
            run_meta={},
        )

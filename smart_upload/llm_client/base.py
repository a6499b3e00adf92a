from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class Attachment:
    """Base64 payload sent next to the prompt (page image or whole PDF)."""

    mime_type: str
    data_base64: str
    filename: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True, slots=True)
class LLMResult:
    raw_text: str
    raw_response: dict[str, Any]
    usage_raw: dict[str, Any]
    usage_normalized: dict[str, int | None]
    cost: dict[str, Any]
    timings: dict[str, float]

    @property
    def prompt_tokens(self) -> int:
        return int(self.usage_normalized.get("prompt_tokens") or 0)


class VisionLLMClient(Protocol):
    def generate_json(
        self,
        *,
        system_prompt: str,
        user_content: str,
        attachments: Sequence[Attachment],
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
    ) -> LLMResult: ...


def response_to_dict(value: Any) -> dict[str, Any]:
    """Plain dict view of an SDK response object (pydantic models included)."""
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump(mode="json", exclude_none=True)
        if isinstance(dumped, dict):
            return dumped

    return {}

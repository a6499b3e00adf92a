from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Sequence

import fitz
import pytest

from smart_upload.llm_client.base import Attachment, LLMResult
from smart_upload.pipeline.extraction import ExtractionPipeline
from smart_upload.pipeline.rendering import RenderOptions
from smart_upload.storage.catalog import SqliteCatalogWriter
from smart_upload.storage.object_store import LocalObjectStorage
from smart_upload.storage.repo import SmartUploadRepo


class FakeVisionClient:
    """Returns scripted responses in order; exceptions in the script are raised."""

    def __init__(self, responses: Sequence[Any], *, prompt_tokens: int = 1000) -> None:
        self._responses = list(responses)
        self.prompt_tokens = prompt_tokens
        self.calls: list[dict[str, Any]] = []

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
    ) -> LLMResult:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_content": user_content,
                "attachments": list(attachments),
                "model": model,
                "run_meta": run_meta,
            }
        )
        if not self._responses:
            raise AssertionError("FakeVisionClient ran out of scripted responses")

        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        raw_text = response if isinstance(response, str) else json.dumps(response)
        return LLMResult(
            raw_text=raw_text,
            raw_response={},
            usage_raw={},
            usage_normalized={
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": 100,
                "total_tokens": self.prompt_tokens + 100,
                "reasoning_tokens": None,
            },
            cost={},
            timings={"t_llm_total_ms": 1.0},
        )


class FakeRenderer:
    def __init__(self) -> None:
        self.calls: list[list[int]] = []

    def render(
        self,
        pdf_bytes: bytes,
        page_indices: Sequence[int],
        options: RenderOptions | None = None,
    ) -> list[str]:
        self.calls.append(list(page_indices))
        return [f"image-{index}" for index in page_indices]


def build_pdf(page_count: int, *, label: str = "Page") -> bytes:
    document = fitz.open()
    try:
        for index in range(page_count):
            page = document.new_page()
            page.insert_text((72, 72), f"{label} {index + 1}")
        return document.tobytes()
    finally:
        document.close()


def vision_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Stars and Stripes Forever",
        "composer": "John Philip Sousa",
        "arranger": None,
        "publisher": None,
        "difficulty": "Grade 4",
        "genre": "March",
        "duration": 210,
        "fileType": "PART",
        "isMultiPart": False,
        "cuttingInstructions": [
            {"partName": "Flute", "instrument": "Flute", "pageRange": [1, 3]},
        ],
        "confidenceScore": 92,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    return build_pdf


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def make_pipeline(fake_renderer: FakeRenderer) -> Callable[[FakeVisionClient], ExtractionPipeline]:
    def _make(client: FakeVisionClient) -> ExtractionPipeline:
        return ExtractionPipeline(llm_client=client, renderer=fake_renderer)

    return _make


@pytest.fixture
def repo(tmp_path: Path) -> SmartUploadRepo:
    return SmartUploadRepo(tmp_path / "smart_upload.sqlite3")


@pytest.fixture
def storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def catalog(tmp_path: Path) -> SqliteCatalogWriter:
    return SqliteCatalogWriter(tmp_path / "catalog.sqlite3")

from __future__ import annotations

from smart_upload.config.settings import Settings
from smart_upload.llm_client.base import VisionLLMClient
from smart_upload.llm_client.gemini_client import GeminiVisionClient
from smart_upload.llm_client.openai_client import OpenAIVisionClient

SUPPORTED_PROVIDERS = ("openai", "google")


def build_vision_client(settings: Settings) -> VisionLLMClient:
    provider = settings.llm_provider.strip().lower()
    if provider == "openai":
        return OpenAIVisionClient(
            api_key=settings.openai_api_key,
            pricing_config=settings.pricing_config,
        )
    if provider == "google":
        return GeminiVisionClient(
            api_key=settings.google_api_key,
            pricing_config=settings.pricing_config,
        )
    raise ValueError(
        f"Unsupported LLM provider: {settings.llm_provider}. "
        f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}"
    )

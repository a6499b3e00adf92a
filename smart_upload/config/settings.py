from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Immutable knobs for one pipeline run."""

    auto_approve_threshold: float = 90
    verification_threshold: float = 70
    skip_parse_threshold: float = 50
    two_pass_enabled: bool = True
    max_llm_calls: int = 5
    max_input_tokens: int = 500_000
    send_full_pdf: bool = False
    max_sampled_pages: int = 8
    max_verification_pages: int = 20
    max_pages_per_part: int = 12
    full_score_fallback_max_pages: int = 30
    large_gap_pages: int = 10
    autonomous_ingest: bool = False
    vision_model: str = "gpt-4o"
    verification_model: str = "gpt-4o"
    adjudicator_model: str = "gpt-4o"
    prompt_version: str = "v001"

    def __post_init__(self) -> None:
        for name in (
            "auto_approve_threshold",
            "verification_threshold",
            "skip_parse_threshold",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be within 0..100, got {value}")
        if self.skip_parse_threshold > self.auto_approve_threshold:
            raise ValueError(
                "skip_parse_threshold must not exceed auto_approve_threshold"
            )
        if self.max_llm_calls < 0 or self.max_input_tokens < 0:
            raise ValueError("budget limits must be >= 0 (0 means unlimited)")
        if self.max_sampled_pages < 1:
            raise ValueError("max_sampled_pages must be >= 1")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SMART_UPLOAD_",
        extra="ignore",
    )

    environment: str = "local"
    data_dir: Path = Path("data")
    sqlite_path: Path = Path("data/smart_upload.sqlite3")
    catalog_sqlite_path: Path = Path("data/catalog.sqlite3")
    storage_dir: Path = Path("data/objects")

    pricing_config_path: Path = Path("smart_upload/config/pricing.yaml")

    llm_provider: str = "openai"
    vision_model: str = "gpt-4o"
    verification_model: str = "gpt-4o"
    adjudicator_model: str = "gpt-4o"
    prompt_version: str = "v001"

    auto_approve_threshold: float = Field(
        default=90,
        ge=0,
        le=100,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_AUTO_APPROVE_THRESHOLD",
            "LLM_AUTO_APPROVE_THRESHOLD",
        ),
    )
    verification_threshold: float = Field(
        default=70,
        ge=0,
        le=100,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_CONFIDENCE_THRESHOLD",
            "LLM_CONFIDENCE_THRESHOLD",
        ),
    )
    skip_parse_threshold: float = Field(
        default=50,
        ge=0,
        le=100,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_SKIP_PARSE_THRESHOLD",
            "LLM_SKIP_PARSE_THRESHOLD",
        ),
    )
    two_pass_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_TWO_PASS_ENABLED",
            "LLM_TWO_PASS_ENABLED",
        ),
    )
    max_llm_calls: int = Field(default=5, ge=0)
    max_input_tokens: int = Field(default=500_000, ge=0)
    send_full_pdf: bool = False
    max_sampled_pages: int = Field(default=8, ge=1)
    max_verification_pages: int = Field(default=20, ge=1)
    max_pages_per_part: int = Field(default=12, ge=1)
    autonomous_ingest: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_ENABLE_AUTONOMOUS_MODE",
            "SMART_UPLOAD_AUTONOMOUS_INGEST",
        ),
    )

    max_files_per_batch: int = Field(default=20, ge=1)
    max_total_batch_bytes: int = Field(default=500 * 1024 * 1024, ge=1)

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SMART_UPLOAD_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    google_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SMART_UPLOAD_GOOGLE_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY"
        ),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_data_dir(self) -> Path:
        return self._resolve_path(self.data_dir)

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_catalog_sqlite_path(self) -> Path:
        return self._resolve_path(self.catalog_sqlite_path)

    @property
    def resolved_storage_dir(self) -> Path:
        return self._resolve_path(self.storage_dir)

    @property
    def resolved_pricing_config_path(self) -> Path:
        return self._resolve_path(self.pricing_config_path)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def pricing_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_pricing_config_path)

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            auto_approve_threshold=self.auto_approve_threshold,
            verification_threshold=self.verification_threshold,
            skip_parse_threshold=self.skip_parse_threshold,
            two_pass_enabled=self.two_pass_enabled,
            max_llm_calls=self.max_llm_calls,
            max_input_tokens=self.max_input_tokens,
            send_full_pdf=self.send_full_pdf,
            max_sampled_pages=self.max_sampled_pages,
            max_verification_pages=self.max_verification_pages,
            max_pages_per_part=self.max_pages_per_part,
            autonomous_ingest=self.autonomous_ingest,
            vision_model=self.vision_model,
            verification_model=self.verification_model,
            adjudicator_model=self.adjudicator_model,
            prompt_version=self.prompt_version,
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

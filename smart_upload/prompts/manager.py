from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

VERSION_RE = re.compile(r"^v(\d{3})$")
PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
USER_TEMPLATE_RE = re.compile(r"^user_prompt(?:_(\w+))?\.txt$")

DEFAULT_PROMPTS_ROOT = Path(__file__).resolve().parent

VISION_PROMPT = "smart_upload_vision"
VERIFICATION_PROMPT = "smart_upload_verification"
ADJUDICATION_PROMPT = "smart_upload_adjudication"


@dataclass(frozen=True, slots=True)
class PromptSet:
    prompt_name: str
    version: str
    system_prompt_text: str
    user_templates: dict[str, str]
    schema: dict[str, Any]
    meta: dict[str, Any]
    prompt_dir: Path

    @property
    def schema_name(self) -> str:
        return str(self.meta.get("schema_name") or self.prompt_name)

    def render_user_prompt(self, variant: str = "default", **values: Any) -> str:
        template = self.user_templates.get(variant)
        if template is None:
            raise KeyError(f"{self.prompt_name}/{self.version} has no '{variant}' template")
        return render_template(template, values)


class PromptManager:
    def __init__(self, prompts_root: Path | str | None = None) -> None:
        self.prompts_root = Path(prompts_root) if prompts_root else DEFAULT_PROMPTS_ROOT
        self._cache: dict[tuple[str, str], PromptSet] = {}

    def list_versions(self, prompt_name: str) -> list[str]:
        prompt_dir = self.prompts_root / prompt_name
        if not prompt_dir.exists() or not prompt_dir.is_dir():
            return []

        versions: list[str] = []
        for child in prompt_dir.iterdir():
            if not child.is_dir():
                continue
            if VERSION_RE.match(child.name):
                versions.append(child.name)

        return sorted(versions, key=_version_to_int)

    def load_prompt_set(self, *, prompt_name: str, version: str) -> PromptSet:
        cache_key = (prompt_name, version)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        prompt_dir = self._prompt_dir(prompt_name=prompt_name, version=version)
        system_prompt_path = prompt_dir / "system_prompt.txt"
        schema_path = prompt_dir / "schema.json"
        meta_path = prompt_dir / "meta.yaml"

        if not system_prompt_path.exists():
            raise FileNotFoundError(f"system prompt not found: {system_prompt_path}")
        if not schema_path.exists():
            raise FileNotFoundError(f"schema not found: {schema_path}")

        user_templates: dict[str, str] = {}
        for child in sorted(prompt_dir.iterdir()):
            match = USER_TEMPLATE_RE.match(child.name)
            if match is None:
                continue
            user_templates[match.group(1) or "default"] = child.read_text(
                encoding="utf-8"
            )
        if "default" not in user_templates:
            raise FileNotFoundError(f"user prompt not found in {prompt_dir}")

        meta: dict[str, Any] = {}
        if meta_path.exists():
            parsed_meta = yaml.safe_load(meta_path.read_text(encoding="utf-8")) or {}
            if isinstance(parsed_meta, dict):
                meta = parsed_meta

        prompt_set = PromptSet(
            prompt_name=prompt_name,
            version=version,
            system_prompt_text=system_prompt_path.read_text(encoding="utf-8").strip(),
            user_templates=user_templates,
            schema=_load_schema(schema_path.read_text(encoding="utf-8")),
            meta=meta,
            prompt_dir=prompt_dir,
        )
        self._cache[cache_key] = prompt_set
        return prompt_set

    def _prompt_dir(self, *, prompt_name: str, version: str) -> Path:
        if not VERSION_RE.match(version):
            raise ValueError(f"Invalid prompt version format: {version}")
        return self.prompts_root / prompt_name / version


def render_template(template: str, values: dict[str, Any]) -> str:
    missing = sorted(
        {name for name in PLACEHOLDER_RE.findall(template) if name not in values}
    )
    if missing:
        raise KeyError(f"Missing prompt values: {', '.join(missing)}")

    return PLACEHOLDER_RE.sub(lambda match: str(values[match.group(1)]), template)


def _load_schema(schema_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(schema_text)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid schema JSON: {error}") from error

    if not isinstance(parsed, dict):
        raise ValueError("Schema JSON root must be an object")

    return parsed


def _version_to_int(version: str) -> int:
    match = VERSION_RE.match(version)
    if match is None:
        raise ValueError(f"Invalid version format: {version}")
    return int(match.group(1))

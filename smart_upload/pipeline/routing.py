from __future__ import annotations

from enum import Enum
from typing import Any

from smart_upload.config.settings import PipelineConfig


class RoutingDecision(str, Enum):
    AUTO_APPROVED = "AUTO_APPROVED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAILED_LOW_CONFIDENCE = "FAILED_LOW_CONFIDENCE"


def route_confidence(confidence: float, config: PipelineConfig) -> RoutingDecision:
    if confidence < config.skip_parse_threshold:
        return RoutingDecision.FAILED_LOW_CONFIDENCE
    if confidence >= config.auto_approve_threshold:
        return RoutingDecision.AUTO_APPROVED
    return RoutingDecision.NEEDS_REVIEW


def needs_verification(confidence: float, config: PipelineConfig) -> bool:
    if not config.two_pass_enabled:
        return False
    if confidence < config.skip_parse_threshold:
        return False
    return confidence < config.verification_threshold


def detect_disagreements(first: dict[str, Any], second: dict[str, Any]) -> list[str]:
    """Compare the key fields of two extraction payloads."""
    disagreements: list[str] = []

    if _normalized_text(first.get("title")) != _normalized_text(second.get("title")):
        disagreements.append(
            f'Title mismatch: "{first.get("title")}" vs "{second.get("title")}"'
        )

    if _normalized_text(first.get("composer")) != _normalized_text(second.get("composer")):
        disagreements.append(
            f'Composer mismatch: "{first.get("composer")}" vs "{second.get("composer")}"'
        )

    first_instructions = _instructions(first)
    second_instructions = _instructions(second)

    first_instruments = sorted(
        _normalized_text(item.get("instrument")) for item in first_instructions
    )
    second_instruments = sorted(
        _normalized_text(item.get("instrument")) for item in second_instructions
    )
    if first_instruments != second_instruments:
        disagreements.append("Instrument mapping mismatch in cutting instructions")

    if _page_ranges(first_instructions) != _page_ranges(second_instructions):
        disagreements.append(
            "Page range mismatch: "
            f"{_page_ranges(first_instructions)} vs {_page_ranges(second_instructions)}"
        )

    return disagreements


def _normalized_text(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).lower()


def _instructions(payload: dict[str, Any]) -> list[dict[str, Any]]:
    raw = payload.get("cuttingInstructions")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _page_ranges(instructions: list[dict[str, Any]]) -> list[tuple[int, ...]]:
    ranges: list[tuple[int, ...]] = []
    for item in instructions:
        page_range = item.get("pageRange")
        if isinstance(page_range, (list, tuple)):
            ranges.append(tuple(int(part) for part in page_range))
    return sorted(ranges)

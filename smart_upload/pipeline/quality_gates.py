from __future__ import annotations

from typing import Sequence

from smart_upload.pipeline.cutting_instructions import CuttingInstruction
from smart_upload.pipeline.part_naming import SCORE_FILE_TYPES, normalize_instrument_label

FORBIDDEN_LABELS = frozenset({"null", "none", "n/a", "na", "unknown", "undefined", ""})
MULTI_PART_MIN_PAGES = 10


def evaluate_quality_gates(
    instructions: Sequence[CuttingInstruction],
    *,
    file_type: str | None,
    is_multi_part: bool,
    total_pages: int,
    max_pages_per_part: int = 12,
) -> list[str]:
    """Return the reasons a split plan must not be auto-approved."""
    failures: list[str] = []

    for instruction in instructions:
        for label in (instruction.part_name, instruction.instrument):
            if label.strip().lower() in FORBIDDEN_LABELS:
                failures.append(
                    f"Part {instruction.page_range} has a placeholder label: {label!r}"
                )
                break

        if file_type in SCORE_FILE_TYPES:
            continue
        is_score_part = (
            instruction.section == "Score"
            or normalize_instrument_label(instruction.instrument).part_type != "PART"
        )
        if not is_score_part and instruction.page_count > max_pages_per_part:
            failures.append(
                f"Part '{instruction.part_name}' spans {instruction.page_count} pages "
                f"(max {max_pages_per_part} for a single part)"
            )

    if is_multi_part and total_pages > MULTI_PART_MIN_PAGES and len(instructions) < 2:
        failures.append(
            f"Multi-part document with {total_pages} pages has "
            f"{len(instructions)} cutting instruction(s)"
        )

    return failures

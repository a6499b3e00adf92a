from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Sequence

from smart_upload.pipeline.part_naming import SCORE_FILE_TYPES
from smart_upload.utils.error_taxonomy import PageAccountingError

LabelSource = Literal["model", "gap_fill", "fallback", "reviewer"]

UNLABELLED_INSTRUMENT = "Unlabelled"


@dataclass(frozen=True, slots=True)
class CuttingInstruction:
    part_name: str
    instrument: str
    page_start: int
    page_end: int
    section: str = "Other"
    transposition: str = "C"
    part_number: int | None = None
    label_source: LabelSource = "model"

    @property
    def page_range(self) -> tuple[int, int]:
        return (self.page_start, self.page_end)

    @property
    def page_count(self) -> int:
        return self.page_end - self.page_start + 1

    def to_payload(self) -> dict[str, Any]:
        return {
            "partName": self.part_name,
            "instrument": self.instrument,
            "section": self.section,
            "transposition": self.transposition,
            "partNumber": self.part_number,
            "pageRange": [self.page_start, self.page_end],
            "labelSource": self.label_source,
        }

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], *, label_source: LabelSource | None = None
    ) -> CuttingInstruction:
        if not isinstance(payload, dict):
            raise ValueError("cutting instruction must be an object")

        page_range = payload.get("pageRange")
        if (
            not isinstance(page_range, (list, tuple))
            or len(page_range) != 2
            or not all(_is_integral(value) for value in page_range)
        ):
            raise ValueError(f"pageRange must be two integers, got {page_range!r}")

        instrument = str(payload.get("instrument") or "").strip()
        part_name = str(payload.get("partName") or "").strip() or instrument
        part_number = payload.get("partNumber")
        source = label_source or payload.get("labelSource") or "model"
        return cls(
            part_name=part_name,
            instrument=instrument,
            page_start=int(page_range[0]),
            page_end=int(page_range[1]),
            section=str(payload.get("section") or "Other"),
            transposition=str(payload.get("transposition") or "C"),
            part_number=int(part_number) if _is_integral(part_number) else None,
            label_source=source,
        )


@dataclass(frozen=True, slots=True)
class CuttingPlan:
    instructions: list[CuttingInstruction]
    violations: list[str] = field(default_factory=list)
    filled_gaps: list[tuple[int, int]] = field(default_factory=list)
    used_fallback: bool = False
    large_gap: bool = False

    @property
    def valid(self) -> bool:
        return not self.violations and bool(self.instructions)


def check_partition(
    instructions: Sequence[CuttingInstruction], total_pages: int
) -> list[str]:
    """List every way ``instructions`` fail to partition ``[1, total_pages]``."""
    if total_pages < 1:
        return [f"document has no pages (total_pages={total_pages})"]
    if not instructions:
        return [f"no cutting instructions for {total_pages} page(s)"]

    violations, owners = _structural_violations(instructions, total_pages)
    missing = [page for page in range(1, total_pages + 1) if page not in owners]
    for start, end in _collapse(missing):
        violations.append(
            f"page {start} is not covered"
            if start == end
            else f"pages {start}-{end} are not covered"
        )
    return violations


def _structural_violations(
    instructions: Sequence[CuttingInstruction], total_pages: int
) -> tuple[list[str], dict[int, str]]:
    violations: list[str] = []
    owners: dict[int, str] = {}
    for instruction in instructions:
        label = _describe(instruction)
        if instruction.page_start > instruction.page_end:
            violations.append(f"{label} has an inverted page range")
            continue
        if instruction.page_start < 1 or instruction.page_end > total_pages:
            violations.append(f"{label} is outside pages 1-{total_pages}")
            continue
        for page in range(instruction.page_start, instruction.page_end + 1):
            previous = owners.get(page)
            if previous is not None:
                violations.append(f"page {page} is covered by both {previous} and {label}")
            else:
                owners[page] = label
    return violations, owners


def assert_partition(
    instructions: Sequence[CuttingInstruction], total_pages: int
) -> None:
    violations = check_partition(instructions, total_pages)
    if violations:
        raise PageAccountingError(violations)


def parse_cutting_instructions(
    raw_instructions: Any,
) -> tuple[list[CuttingInstruction], list[str]]:
    if raw_instructions is None:
        return [], []
    if not isinstance(raw_instructions, list):
        return [], ["cuttingInstructions must be an array"]

    instructions: list[CuttingInstruction] = []
    violations: list[str] = []
    for index, payload in enumerate(raw_instructions):
        try:
            instructions.append(CuttingInstruction.from_payload(payload))
        except ValueError as error:
            violations.append(f"cuttingInstructions[{index}]: {error}")
    return instructions, violations


def plan_cutting_instructions(
    raw_instructions: Any,
    *,
    total_pages: int,
    file_type: str | None,
    is_multi_part: bool,
    fallback_instrument: str | None = None,
    full_score_fallback_max_pages: int = 30,
    large_gap_pages: int = 10,
) -> CuttingPlan:
    """Turn untrusted instructions into a page partition, or explain why not.

    Overlapping, inverted and out-of-range entries reject the whole set.
    Uncovered pages are filled with ``Unlabelled`` parts.
    """
    instructions, violations = parse_cutting_instructions(raw_instructions)
    if violations:
        return CuttingPlan(instructions=[], violations=violations)

    used_fallback = False
    if not instructions:
        fallback = _fallback_instruction(
            total_pages=total_pages,
            file_type=file_type,
            is_multi_part=is_multi_part,
            fallback_instrument=fallback_instrument,
            full_score_fallback_max_pages=full_score_fallback_max_pages,
        )
        if fallback is None:
            return CuttingPlan(
                instructions=[],
                violations=[f"no cutting instructions for {total_pages} page(s)"],
            )
        instructions = [fallback]
        used_fallback = True

    ordered = sorted(instructions, key=lambda item: (item.page_start, item.page_end))
    structural, _ = _structural_violations(ordered, total_pages)
    if structural:
        return CuttingPlan(instructions=[], violations=structural)

    filled, gaps = _fill_gaps(ordered, total_pages)
    assert_partition(filled, total_pages)

    return CuttingPlan(
        instructions=filled,
        filled_gaps=gaps,
        used_fallback=used_fallback,
        large_gap=any(end - start + 1 > large_gap_pages for start, end in gaps),
    )


def instructions_from_payloads(
    payloads: Iterable[dict[str, Any]], *, label_source: LabelSource | None = None
) -> list[CuttingInstruction]:
    return [
        CuttingInstruction.from_payload(payload, label_source=label_source)
        for payload in payloads
    ]


def _fallback_instruction(
    *,
    total_pages: int,
    file_type: str | None,
    is_multi_part: bool,
    fallback_instrument: str | None,
    full_score_fallback_max_pages: int,
) -> CuttingInstruction | None:
    if total_pages < 1:
        return None

    if file_type in SCORE_FILE_TYPES and total_pages <= full_score_fallback_max_pages:
        name = "Conductor Score" if file_type == "CONDUCTOR_SCORE" else "Full Score"
        if file_type == "CONDENSED_SCORE":
            name = "Condensed Score"
        return CuttingInstruction(
            part_name=name,
            instrument=name,
            page_start=1,
            page_end=total_pages,
            section="Score",
            label_source="fallback",
        )

    if not is_multi_part and fallback_instrument:
        return CuttingInstruction(
            part_name=fallback_instrument,
            instrument=fallback_instrument,
            page_start=1,
            page_end=total_pages,
            label_source="fallback",
        )

    return None


def _fill_gaps(
    ordered: list[CuttingInstruction], total_pages: int
) -> tuple[list[CuttingInstruction], list[tuple[int, int]]]:
    result: list[CuttingInstruction] = []
    gaps: list[tuple[int, int]] = []
    next_page = 1
    for instruction in ordered:
        if instruction.page_start > next_page:
            gaps.append((next_page, instruction.page_start - 1))
            result.append(_gap_instruction(next_page, instruction.page_start - 1))
        result.append(instruction)
        next_page = instruction.page_end + 1

    if next_page <= total_pages:
        gaps.append((next_page, total_pages))
        result.append(_gap_instruction(next_page, total_pages))

    return result, gaps


def _gap_instruction(start: int, end: int) -> CuttingInstruction:
    pages = f"Page {start}" if start == end else f"Pages {start}-{end}"
    return CuttingInstruction(
        part_name=f"Unlabelled {pages}",
        instrument=UNLABELLED_INSTRUMENT,
        page_start=start,
        page_end=end,
        label_source="gap_fill",
    )


def _describe(instruction: CuttingInstruction) -> str:
    name = instruction.part_name or instruction.instrument or "unnamed part"
    return f"'{name}' [{instruction.page_start}, {instruction.page_end}]"


def _collapse(pages: list[int]) -> list[tuple[int, int]]:
    runs: list[tuple[int, int]] = []
    for page in pages:
        if runs and runs[-1][1] == page - 1:
            runs[-1] = (runs[-1][0], page)
        else:
            runs.append((page, page))
    return runs


def _is_integral(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()

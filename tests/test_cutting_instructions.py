from __future__ import annotations

import pytest

from smart_upload.pipeline.cutting_instructions import (
    UNLABELLED_INSTRUMENT,
    CuttingInstruction,
    assert_partition,
    check_partition,
    instructions_from_payloads,
    plan_cutting_instructions,
)
from smart_upload.utils.error_taxonomy import PageAccountingError


def _raw(*ranges: tuple[int, int], name: str = "Part") -> list[dict[str, object]]:
    return [
        {"partName": f"{name} {index}", "instrument": f"{name} {index}", "pageRange": list(page_range)}
        for index, page_range in enumerate(ranges, start=1)
    ]


def test_plan_accepts_exact_partition_in_page_order() -> None:
    plan = plan_cutting_instructions(
        _raw((4, 6), (1, 3)), total_pages=6, file_type="PART", is_multi_part=True
    )

    assert plan.valid is True
    assert [instruction.page_range for instruction in plan.instructions] == [(1, 3), (4, 6)]
    assert plan.filled_gaps == []
    assert plan.used_fallback is False


def test_plan_fills_gaps_with_unlabelled_parts() -> None:
    plan = plan_cutting_instructions(
        _raw((3, 4), (7, 7)), total_pages=9, file_type="PART", is_multi_part=True
    )

    assert plan.valid is True
    assert plan.filled_gaps == [(1, 2), (5, 6), (8, 9)]
    gap_parts = [item for item in plan.instructions if item.label_source == "gap_fill"]
    assert [item.part_name for item in gap_parts] == [
        "Unlabelled Pages 1-2",
        "Unlabelled Pages 5-6",
        "Unlabelled Pages 8-9",
    ]
    assert all(item.instrument == UNLABELLED_INSTRUMENT for item in gap_parts)
    assert check_partition(plan.instructions, 9) == []
    assert plan.large_gap is False


def test_plan_flags_large_gap() -> None:
    plan = plan_cutting_instructions(
        _raw((1, 2)), total_pages=20, file_type="PART", is_multi_part=True, large_gap_pages=10
    )

    assert plan.filled_gaps == [(3, 20)]
    assert plan.large_gap is True


@pytest.mark.parametrize(
    ("ranges", "fragment"),
    [
        (((1, 3), (3, 5)), "page 3 is covered by both"),
        (((1, 2), (5, 3)), "inverted page range"),
        (((1, 2), (3, 9)), "outside pages 1-5"),
        (((0, 5),), "outside pages 1-5"),
    ],
)
def test_plan_rejects_overlaps_inversions_and_out_of_range(
    ranges: tuple[tuple[int, int], ...], fragment: str
) -> None:
    plan = plan_cutting_instructions(
        _raw(*ranges), total_pages=5, file_type="PART", is_multi_part=True
    )

    assert plan.valid is False
    assert plan.instructions == []
    assert any(fragment in violation for violation in plan.violations)


def test_plan_rejects_malformed_entries() -> None:
    plan = plan_cutting_instructions(
        [{"partName": "Flute", "instrument": "Flute", "pageRange": [1]}],
        total_pages=2,
        file_type="PART",
        is_multi_part=False,
    )

    assert plan.valid is False
    assert plan.violations[0].startswith("cuttingInstructions[0]: pageRange must be two integers")


def test_plan_full_score_fallback_for_short_scores() -> None:
    plan = plan_cutting_instructions(
        [], total_pages=24, file_type="FULL_SCORE", is_multi_part=False
    )

    assert plan.valid is True
    assert plan.used_fallback is True
    assert len(plan.instructions) == 1
    instruction = plan.instructions[0]
    assert instruction.part_name == "Full Score"
    assert instruction.section == "Score"
    assert instruction.page_range == (1, 24)
    assert instruction.label_source == "fallback"


def test_plan_no_score_fallback_for_long_scores() -> None:
    plan = plan_cutting_instructions(
        [], total_pages=31, file_type="CONDUCTOR_SCORE", is_multi_part=False
    )

    assert plan.valid is False
    assert plan.violations == ["no cutting instructions for 31 page(s)"]


def test_plan_single_part_fallback_uses_known_instrument() -> None:
    plan = plan_cutting_instructions(
        None,
        total_pages=2,
        file_type="PART",
        is_multi_part=False,
        fallback_instrument="Tuba",
    )

    assert plan.used_fallback is True
    assert [(item.instrument, item.page_range) for item in plan.instructions] == [("Tuba", (1, 2))]


def test_plan_no_fallback_for_multi_part_packets() -> None:
    plan = plan_cutting_instructions(
        [],
        total_pages=12,
        file_type="PART",
        is_multi_part=True,
        fallback_instrument="Tuba",
    )

    assert plan.valid is False


def test_check_partition_reports_missing_pages() -> None:
    instructions = [
        CuttingInstruction(part_name="Flute", instrument="Flute", page_start=1, page_end=2),
        CuttingInstruction(part_name="Oboe", instrument="Oboe", page_start=5, page_end=5),
    ]

    assert check_partition(instructions, 6) == ["pages 3-4 are not covered", "page 6 is not covered"]
    assert check_partition([], 3) == ["no cutting instructions for 3 page(s)"]
    assert check_partition(instructions, 0) == ["document has no pages (total_pages=0)"]


def test_assert_partition_raises_page_accounting_error() -> None:
    instructions = [
        CuttingInstruction(part_name="Flute", instrument="Flute", page_start=1, page_end=3),
        CuttingInstruction(part_name="Oboe", instrument="Oboe", page_start=3, page_end=4),
    ]

    with pytest.raises(PageAccountingError) as exc_info:
        assert_partition(instructions, 4)

    assert exc_info.value.code == "PAGE_ACCOUNTING_VIOLATION"
    assert exc_info.value.violations == [
        "page 3 is covered by both 'Flute' [1, 3] and 'Oboe' [3, 4]"
    ]


def test_instruction_payload_conversion_keeps_fields() -> None:
    instruction = CuttingInstruction(
        part_name="1st Bb Clarinet",
        instrument="1st Bb Clarinet",
        page_start=2,
        page_end=3,
        section="Woodwinds",
        transposition="Bb",
        part_number=1,
    )

    payload = instruction.to_payload()
    assert payload["pageRange"] == [2, 3]
    assert payload["labelSource"] == "model"

    [restored] = instructions_from_payloads([payload], label_source="reviewer")
    assert restored.page_range == (2, 3)
    assert restored.transposition == "Bb"
    assert restored.label_source == "reviewer"


def test_instruction_from_payload_defaults_part_name_to_instrument() -> None:
    instruction = CuttingInstruction.from_payload(
        {"instrument": "Tuba", "pageRange": [1.0, 2.0], "partNumber": True}
    )

    assert instruction.part_name == "Tuba"
    assert instruction.page_range == (1, 2)
    assert instruction.part_number is None

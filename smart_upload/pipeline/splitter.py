from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import fitz  # PyMuPDF

from smart_upload.logging import get_logger
from smart_upload.pipeline.cutting_instructions import CuttingInstruction, assert_partition
from smart_upload.pipeline.part_naming import (
    build_part_display_name,
    build_part_filename,
    build_part_storage_slug,
)
from smart_upload.utils.error_taxonomy import InvalidPdfError

logger = get_logger("splitter")


@dataclass(frozen=True, slots=True)
class SplitPart:
    instruction: CuttingInstruction
    display_name: str
    file_name: str
    storage_slug: str
    pdf_bytes: bytes

    @property
    def page_count(self) -> int:
        return self.instruction.page_count


@dataclass(frozen=True, slots=True)
class SplitFailure:
    instruction: CuttingInstruction
    error_message: str


@dataclass(frozen=True, slots=True)
class SplitResult:
    total_pages: int
    parts: list[SplitPart] = field(default_factory=list)
    failures: list[SplitFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def split_pdf(
    pdf_bytes: bytes,
    instructions: Sequence[CuttingInstruction],
    *,
    piece_title: str = "",
) -> SplitResult:
    """Write one PDF per cutting instruction.

    The instructions are checked against the document's page count before
    any page is copied; a bad partition raises ``PageAccountingError``.
    A part that fails to extract is reported in ``failures`` and the rest
    still run.
    """
    try:
        source = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as error:  # noqa: BLE001
        raise InvalidPdfError(f"Unable to open PDF: {error}") from error

    with source:
        total_pages = int(source.page_count)
        assert_partition(instructions, total_pages)

        parts: list[SplitPart] = []
        failures: list[SplitFailure] = []
        used_slugs: set[str] = set()
        for instruction in instructions:
            display_name = build_part_display_name(
                piece_title, instruction.part_name or instruction.instrument
            )
            try:
                part_bytes = _extract_range(source, instruction)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "failed to extract pages %d-%d for %s: %s",
                    instruction.page_start,
                    instruction.page_end,
                    display_name,
                    error,
                )
                failures.append(
                    SplitFailure(instruction=instruction, error_message=str(error))
                )
                continue

            parts.append(
                SplitPart(
                    instruction=instruction,
                    display_name=display_name,
                    file_name=build_part_filename(display_name),
                    storage_slug=_unique_slug(
                        build_part_storage_slug(display_name), used_slugs
                    ),
                    pdf_bytes=part_bytes,
                )
            )

    logger.info(
        "split %d page(s) into %d part(s)",
        total_pages,
        len(parts),
        extra={"metrics": {"parts": len(parts), "failures": len(failures)}},
    )
    return SplitResult(total_pages=total_pages, parts=parts, failures=failures)


def _extract_range(source: fitz.Document, instruction: CuttingInstruction) -> bytes:
    target = fitz.open()
    try:
        target.insert_pdf(
            source,
            from_page=instruction.page_start - 1,
            to_page=instruction.page_end - 1,
        )
        if target.page_count != instruction.page_count:
            raise RuntimeError(
                f"expected {instruction.page_count} page(s), got {target.page_count}"
            )
        return target.tobytes()
    finally:
        target.close()


def _unique_slug(slug: str, used: set[str]) -> str:
    candidate = slug
    suffix = 1
    while candidate in used:
        suffix += 1
        candidate = f"{slug}_{suffix}"
    used.add(candidate)
    return candidate

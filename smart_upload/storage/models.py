from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from typing import Literal

UploadStatus = Literal[
    "CREATED",
    "UPLOADING",
    "PROCESSING",
    "NEEDS_REVIEW",
    "APPROVED",
    "INGESTING",
    "COMPLETE",
    "FAILED",
    "CANCELLED",
]
ItemStep = Literal[
    "VALIDATED",
    "TEXT_EXTRACTED",
    "METADATA_EXTRACTED",
    "SPLIT_PLANNED",
    "SPLIT_COMPLETE",
    "INGESTED",
]
PassName = Literal["vision", "verification", "adjudication"]
ParseStatus = Literal["ok", "invalid", "error"]

UPLOAD_STATUSES: tuple[str, ...] = (
    "CREATED",
    "UPLOADING",
    "PROCESSING",
    "NEEDS_REVIEW",
    "APPROVED",
    "INGESTING",
    "COMPLETE",
    "FAILED",
    "CANCELLED",
)
STEP_ORDER: tuple[str, ...] = (
    "VALIDATED",
    "TEXT_EXTRACTED",
    "METADATA_EXTRACTED",
    "SPLIT_PLANNED",
    "SPLIT_COMPLETE",
    "INGESTED",
)
TERMINAL_STATUSES = frozenset({"COMPLETE", "FAILED", "CANCELLED"})
PENDING_ITEM_STATUSES = frozenset({"CREATED", "UPLOADING", "PROCESSING"})
# Items in these states never change again.
FROZEN_ITEM_STATUSES = frozenset({"COMPLETE", "CANCELLED"})
# Statuses an item may still move to after its batch has finished.
CLOSING_ITEM_STATUSES = frozenset({"FAILED", "CANCELLED"})
APPROVABLE_ITEM_STATUSES = frozenset({"PROCESSING", "NEEDS_REVIEW", "APPROVED", "FAILED"})

BATCH_TRANSITIONS: dict[str, frozenset[str]] = {
    "CREATED": frozenset(
        {"UPLOADING", "PROCESSING", "NEEDS_REVIEW", "APPROVED", "FAILED", "CANCELLED"}
    ),
    "UPLOADING": frozenset(
        {"PROCESSING", "NEEDS_REVIEW", "APPROVED", "FAILED", "CANCELLED"}
    ),
    "PROCESSING": frozenset(
        {"NEEDS_REVIEW", "APPROVED", "COMPLETE", "FAILED", "CANCELLED"}
    ),
    "NEEDS_REVIEW": frozenset(
        {"PROCESSING", "APPROVED", "INGESTING", "COMPLETE", "FAILED", "CANCELLED"}
    ),
    "APPROVED": frozenset(
        {"PROCESSING", "NEEDS_REVIEW", "INGESTING", "COMPLETE", "FAILED", "CANCELLED"}
    ),
    "INGESTING": frozenset({"COMPLETE", "FAILED", "CANCELLED"}),
    "COMPLETE": frozenset(),
    "FAILED": frozenset(),
    "CANCELLED": frozenset(),
}

PROPOSAL_EDITABLE_FIELDS: tuple[str, ...] = (
    "title",
    "composer",
    "arranger",
    "publisher",
    "genre",
    "difficulty",
    "duration",
    "notes",
    "instrumentation",
    "cutting_instructions",
    "matched_piece_id",
    "is_new_piece",
)


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition_batch(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in BATCH_TRANSITIONS.get(current, frozenset())


def step_index(step: str | None) -> int:
    if step is None:
        return -1
    return STEP_ORDER.index(step)


@dataclass(frozen=True, slots=True)
class BatchRecord:
    batch_id: str
    user_id: str
    status: UploadStatus
    total_files: int
    processed_files: int
    success_files: int
    failed_files: int
    error_summary: str | None
    created_at: str
    updated_at: str
    completed_at: str | None


@dataclass(frozen=True, slots=True)
class ItemRecord:
    item_id: str
    batch_id: str
    file_name: str
    file_size: int
    mime_type: str
    storage_key: str | None
    status: UploadStatus
    current_step: ItemStep | None
    error_message: str | None
    error_details: dict[str, Any] | None
    ocr_text: str | None
    extracted_metadata: dict[str, Any] | None
    is_packet: bool
    page_count: int | None
    split_files: list[dict[str, Any]] | None
    created_at: str
    updated_at: str
    completed_at: str | None


@dataclass(frozen=True, slots=True)
class ProposalInput:
    title: str | None = None
    composer: str | None = None
    arranger: str | None = None
    publisher: str | None = None
    genre: str | None = None
    difficulty: str | None = None
    duration: int | None = None
    notes: str | None = None
    instrumentation: list[str] = field(default_factory=list)
    title_confidence: float | None = None
    composer_confidence: float | None = None
    difficulty_confidence: float | None = None
    overall_confidence: float | None = None
    cutting_instructions: list[dict[str, Any]] = field(default_factory=list)
    routing_decision: str | None = None
    review_notes: list[str] = field(default_factory=list)
    matched_piece_id: str | None = None
    is_new_piece: bool = True


@dataclass(frozen=True, slots=True)
class ProposalRecord:
    proposal_id: str
    item_id: str
    batch_id: str
    title: str | None
    composer: str | None
    arranger: str | None
    publisher: str | None
    genre: str | None
    difficulty: str | None
    duration: int | None
    notes: str | None
    instrumentation: list[str]
    title_confidence: float | None
    composer_confidence: float | None
    difficulty_confidence: float | None
    overall_confidence: float | None
    cutting_instructions: list[dict[str, Any]]
    routing_decision: str | None
    review_notes: list[str]
    corrections: dict[str, Any]
    matched_piece_id: str | None
    is_new_piece: bool
    is_approved: bool
    approved_by: str | None
    approved_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True, slots=True)
class PassResponseRecord:
    id: int
    item_id: str
    batch_id: str
    pass_name: PassName
    model: str | None
    raw_text: str
    parse_status: ParseStatus
    error_message: str | None
    usage: dict[str, Any] | None
    created_at: str


@dataclass(frozen=True, slots=True)
class BatchBundle:
    batch: BatchRecord
    items: list[ItemRecord]
    proposals: list[ProposalRecord]

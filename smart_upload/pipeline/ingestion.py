from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from smart_upload.logging import get_logger
from smart_upload.pipeline.cutting_instructions import instructions_from_payloads
from smart_upload.pipeline.part_naming import SCORE_FILE_TYPES, normalize_instrument_label
from smart_upload.pipeline.splitter import SplitPart, split_pdf
from smart_upload.storage.catalog import CatalogEntry, CatalogFile, CatalogPart, CatalogWriter
from smart_upload.storage.models import PENDING_ITEM_STATUSES, ItemRecord, ProposalRecord
from smart_upload.storage.object_store import ObjectStorage, build_part_key
from smart_upload.storage.repo import SmartUploadRepo
from smart_upload.utils.error_taxonomy import (
    InvalidStateError,
    SmartUploadError,
    SplitFailedError,
    build_error_details,
    is_storage_error_exception,
    is_transient_exception,
)
from smart_upload.utils.retry import run_with_retry

logger = get_logger("ingestion")

INGESTABLE_BATCH_STATUSES = frozenset({"APPROVED", "INGESTING"})
INGESTABLE_ITEM_STATUSES = frozenset({"APPROVED", "INGESTING"})


@dataclass(frozen=True, slots=True)
class ItemIngestResult:
    item_id: str
    piece_id: str
    file_ids: list[str]
    part_ids: list[str]


@dataclass(frozen=True, slots=True)
class BatchIngestResult:
    batch_id: str
    status: str
    ingested: list[ItemIngestResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "COMPLETE" and not self.errors


class BatchIngestor:
    """Commits approved proposals to the catalog.

    Per item the source PDF is split and every part uploaded before the
    catalog is touched, and the catalog write is one transaction. An item
    therefore lands in the catalog with all of its parts or not at all.
    """

    def __init__(
        self,
        *,
        repo: SmartUploadRepo,
        storage: ObjectStorage,
        catalog: CatalogWriter,
        max_storage_retries: int = 2,
        storage_retry_base_delay_seconds: float = 0.5,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.repo = repo
        self.storage = storage
        self.catalog = catalog
        self.max_storage_retries = max_storage_retries
        self.storage_retry_base_delay_seconds = storage_retry_base_delay_seconds
        self._sleep_fn = sleep_fn

    def ingest_batch(self, batch_id: str) -> BatchIngestResult:
        batch = self.repo.require_batch(batch_id)
        if batch.status not in INGESTABLE_BATCH_STATUSES:
            raise InvalidStateError(
                f"Batch {batch_id} must be APPROVED to ingest (status {batch.status})"
            )
        if batch.status == "APPROVED":
            self.repo.update_batch_status(batch_id, "INGESTING")

        ingested: list[ItemIngestResult] = []
        errors: list[str] = []
        for item in self.repo.list_batch_items(batch_id):
            if item.status not in INGESTABLE_ITEM_STATUSES:
                continue
            proposal = self.repo.get_item_proposal(item.item_id)
            if proposal is None or not proposal.is_approved:
                continue

            try:
                ingested.append(self.ingest_item(item, proposal))
            except Exception as error:  # noqa: BLE001
                if not _is_item_failure(error):
                    raise
                message = f"{item.file_name}: {error}"
                errors.append(message)
                self.repo.update_item_status(
                    item.item_id,
                    "FAILED",
                    error_message=str(error),
                    error_details=build_error_details(error),
                )
                logger.warning(
                    "item ingestion failed: %s",
                    error,
                    extra={"batch_id": batch_id, "item_id": item.item_id, "stage": "ingest"},
                )

        # Items added while ingesting were never extracted and cannot join this run.
        for item in self.repo.list_batch_items(batch_id):
            if item.status in PENDING_ITEM_STATUSES:
                self.repo.update_item_status(
                    item.item_id,
                    "CANCELLED",
                    error_message="Added after ingestion started",
                )

        items = [
            item for item in self.repo.list_batch_items(batch_id) if item.status != "CANCELLED"
        ]
        status = "COMPLETE" if any(item.status == "COMPLETE" for item in items) else "FAILED"
        failed_messages = [
            f"{item.file_name}: {item.error_message}"
            for item in items
            if item.status == "FAILED" and item.error_message
        ]
        self.repo.refresh_batch_counts(batch_id)
        self.repo.update_batch_status(
            batch_id,
            status,
            error_summary="; ".join(failed_messages) or None,
        )
        logger.info(
            "batch ingestion finished with %s",
            status,
            extra={
                "batch_id": batch_id,
                "stage": "ingest",
                "metrics": {"ingested": len(ingested), "failed": len(errors)},
            },
        )
        return BatchIngestResult(
            batch_id=batch_id, status=status, ingested=ingested, errors=errors
        )

    def ingest_item(self, item: ItemRecord, proposal: ProposalRecord) -> ItemIngestResult:
        if item.storage_key is None:
            raise InvalidStateError(f"Item {item.item_id} has no stored source file")

        self.repo.update_item_status(item.item_id, "INGESTING")
        source_bytes = self._with_storage_retry(
            lambda: self.storage.download(item.storage_key)
        )

        instructions = instructions_from_payloads(proposal.cutting_instructions)
        split = split_pdf(source_bytes, instructions, piece_title=proposal.title or "")
        if not split.ok:
            raise SplitFailedError(
                [
                    f"{failure.instruction.part_name} "
                    f"{list(failure.instruction.page_range)}: {failure.error_message}"
                    for failure in split.failures
                ]
            )
        self.repo.update_item_step(item.item_id, "SPLIT_COMPLETE")

        uploaded: list[tuple[SplitPart, str]] = []
        for part in split.parts:
            key = build_part_key(
                batch_id=item.batch_id, item_id=item.item_id, slug=part.storage_slug
            )
            self._with_storage_retry(
                lambda part=part, key=key: self.storage.upload(part.pdf_bytes, key)
            )
            uploaded.append((part, key))

        self.repo.update_item_metadata(
            item.item_id,
            split_files=[_split_file_payload(part, key) for part, key in uploaded],
        )

        commit = self.catalog.commit(_catalog_entry(item, proposal, uploaded))
        self.repo.update_item_step(item.item_id, "INGESTED")
        self.repo.update_item_status(item.item_id, "COMPLETE")
        logger.info(
            "item ingested into piece %s",
            commit.piece_id,
            extra={
                "batch_id": item.batch_id,
                "item_id": item.item_id,
                "stage": "ingest",
                "metrics": {"parts": len(commit.part_ids), "created": commit.created},
            },
        )
        return ItemIngestResult(
            item_id=item.item_id,
            piece_id=commit.piece_id,
            file_ids=commit.file_ids,
            part_ids=commit.part_ids,
        )

    def _with_storage_retry(self, operation: Callable[[], Any]) -> Any:
        kwargs: dict[str, Any] = {}
        if self._sleep_fn is not None:
            kwargs["sleep_fn"] = self._sleep_fn
        return run_with_retry(
            operation=operation,
            should_retry=_is_retryable_storage_error,
            max_retries=self.max_storage_retries,
            base_delay_seconds=self.storage_retry_base_delay_seconds,
            on_retry=_log_storage_retry,
            **kwargs,
        )


def _catalog_entry(
    item: ItemRecord,
    proposal: ProposalRecord,
    uploaded: list[tuple[SplitPart, str]],
) -> CatalogEntry:
    metadata = item.extracted_metadata or {}
    source_type = str(metadata.get("fileType") or "PART")

    files = [
        CatalogFile(
            file_name=item.file_name,
            file_type=source_type,
            file_size=item.file_size,
            mime_type=item.mime_type,
            storage_key=str(item.storage_key),
        )
    ]
    parts: list[CatalogPart] = []
    for part, key in uploaded:
        instruction = part.instruction
        part_type = normalize_instrument_label(instruction.instrument).part_type
        files.append(
            CatalogFile(
                file_name=part.file_name,
                file_type=part_type if part_type in SCORE_FILE_TYPES else "PART",
                file_size=len(part.pdf_bytes),
                mime_type="application/pdf",
                storage_key=key,
            )
        )
        parts.append(
            CatalogPart(
                instrument=instruction.instrument,
                part_name=part.display_name,
                storage_key=key,
                page_start=instruction.page_start,
                page_end=instruction.page_end,
            )
        )

    return CatalogEntry(
        source_item_id=item.item_id,
        title=proposal.title or "Untitled",
        composer=proposal.composer,
        arranger=proposal.arranger,
        publisher=proposal.publisher,
        genre=proposal.genre,
        difficulty=proposal.difficulty,
        duration=proposal.duration,
        notes=proposal.notes,
        matched_piece_id=None if proposal.is_new_piece else proposal.matched_piece_id,
        files=files,
        parts=parts,
    )


def _split_file_payload(part: SplitPart, key: str) -> dict[str, Any]:
    return {
        "partName": part.instruction.part_name,
        "instrument": part.instruction.instrument,
        "pageRange": [part.instruction.page_start, part.instruction.page_end],
        "fileName": part.file_name,
        "fileSize": len(part.pdf_bytes),
        "storageKey": key,
    }


def _is_item_failure(error: Exception) -> bool:
    if isinstance(error, (SmartUploadError, FileNotFoundError, ValueError)):
        return True
    return not (is_transient_exception(error) or is_storage_error_exception(error))


def _is_retryable_storage_error(error: Exception) -> bool:
    if isinstance(error, FileNotFoundError):
        return False
    return is_storage_error_exception(error) or is_transient_exception(error)


def _log_storage_retry(attempt: int, delay: float, error: Exception) -> None:
    logger.warning(
        "storage operation failed (attempt %d), retrying in %.2fs: %s",
        attempt,
        delay,
        error,
        extra={"stage": "storage"},
    )
